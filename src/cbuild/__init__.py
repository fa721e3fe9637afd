"""cbuild - dependency-ordered, cached builds of multi-component software stacks."""

__version__ = "0.3.0"
