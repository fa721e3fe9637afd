"""Load component descriptors from a JSON file into a registry.

File layout:

    {
      "components": [
        {
          "name": "license-acceptance",
          "version": "master",
          "license": {"identifier": "Apache-2.0",
                      "reference": "http://www.apache.org/licenses/LICENSE-2.0"},
          "skip_transitive_licensing": true,
          "source": {"git": "git@github.com:chef/license-acceptance.git"},
          "dependencies": ["ruby", "rubygems", "bundler"],
          "relative_path": "components/ruby",
          "steps": [
            {"command": "bundle install --without development test"},
            {"command": "gem build license-acceptance.gemspec"},
            {"command": "gem install license-acceptance-*.gem"}
          ]
        }
      ]
    }
"""

import json
from pathlib import Path

from cbuild.engine.models import ComponentDescriptor, DescriptorError
from cbuild.engine.registry import ComponentRegistry, DuplicateComponentError


def load_registry(path: Path) -> ComponentRegistry:
    """Read a descriptor file into a ComponentRegistry.

    Raises:
        DescriptorError: If the file is unreadable, not valid JSON, or holds
                         malformed or duplicate descriptors.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise DescriptorError(f"Can't read descriptor file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise DescriptorError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("components"), list):
        raise DescriptorError(f"{path}: expected an object with a 'components' list")

    registry = ComponentRegistry()
    for index, raw in enumerate(data["components"]):
        if not isinstance(raw, dict):
            raise DescriptorError(f"{path}: component #{index} is not an object")
        try:
            registry.register(ComponentDescriptor.from_dict(raw))
        except (DescriptorError, DuplicateComponentError) as e:
            raise DescriptorError(f"{path}: {e}") from e
    return registry
