"""Source acquisition for component builds.

Source fetching is the implicit first step of every component that declares a
source. The executor talks to it through the SourceFetcher protocol; the
default implementation dispatches on the source kind:

- git:  clone (or fetch an existing clone) and check out the component version
- url:  streaming HTTP download with retry/backoff, optional SHA256 check,
        then .tar.gz/.tar.xz/.tar.bz2/.zip extraction
- path: copy of a local directory

Any failure is raised as SourceFetchError so the executor can report it
separately from user build-step failures.
"""

import hashlib
import logging
import shutil
import tarfile
import time
import zipfile
from pathlib import Path
from typing import Protocol, runtime_checkable

import requests

from cbuild.subprocess_utils import safe_run

from .models import DEFAULT_VERSION, SourceKind, SourceSpec

logger = logging.getLogger(__name__)

# Download retry configuration
_MAX_DOWNLOAD_RETRIES = 3
_RETRY_BACKOFF_BASE = 1.0  # seconds; delays are 1s, 2s
_DOWNLOAD_TIMEOUT = 30
_CHUNK_SIZE = 8192


class SourceFetchError(Exception):
    """Raised when a component's source can't be acquired."""

    pass


@runtime_checkable
class SourceFetcher(Protocol):
    """Protocol for acquiring a source into a destination directory."""

    def fetch(self, source: SourceSpec, dest: Path, version: str) -> None:
        """Populate dest with the source at the given version.

        Raises:
            SourceFetchError: If the source can't be acquired.
        """
        ...


class DefaultSourceFetcher:
    """Fetches git, URL and local-path sources."""

    def fetch(self, source: SourceSpec, dest: Path, version: str) -> None:
        logger.debug("Fetching %s into %s", source, dest)
        if source.kind == SourceKind.GIT:
            self._fetch_git(source.location, dest, version)
        elif source.kind == SourceKind.URL:
            self._fetch_url(source.location.replace("{version}", version), dest, source.sha256)
        elif source.kind == SourceKind.PATH:
            self._fetch_path(Path(source.location), dest)
        else:
            raise SourceFetchError(f"Unsupported source kind: {source.kind}")

    # git

    def _git(self, args: list[str], cwd: Path | None = None) -> None:
        try:
            result = safe_run(["git", *args], cwd=cwd, capture_output=True, text=True)
        except OSError as e:
            raise SourceFetchError(f"Failed to run git: {e}") from e
        if result.returncode != 0:
            raise SourceFetchError(f"git {' '.join(args)} failed ({result.returncode}): {result.stderr.strip()}")

    def _fetch_git(self, url: str, dest: Path, version: str) -> None:
        if (dest / ".git").is_dir():
            self._git(["fetch", "--quiet", "--tags", "origin"], cwd=dest)
        else:
            if dest.exists():
                shutil.rmtree(dest)
            dest.parent.mkdir(parents=True, exist_ok=True)
            self._git(["clone", "--quiet", url, str(dest)])

        if version != DEFAULT_VERSION:
            self._git(["checkout", "--quiet", version], cwd=dest)

    # url

    def _fetch_url(self, url: str, dest: Path, sha256: str | None) -> None:
        archive_name = Path(url.split("/")[-1].split("?")[0]).name or "source.tar.gz"
        dest.parent.mkdir(parents=True, exist_ok=True)
        archive_path = dest.parent / archive_name

        last_error: Exception | None = None
        for attempt in range(_MAX_DOWNLOAD_RETRIES):
            if attempt > 0:
                delay = _RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
                time.sleep(delay)
            try:
                digest = self._download(url, archive_path)
                break
            except requests.HTTPError as e:
                # HTTP errors (404, 500, etc.) are not transient - don't retry
                raise SourceFetchError(f"Download of {url} failed: {e}") from e
            except (requests.ConnectionError, requests.Timeout, OSError) as e:
                last_error = e
                logger.warning("Download attempt %d/%d failed for %s: %s", attempt + 1, _MAX_DOWNLOAD_RETRIES, url, e)
        else:
            raise SourceFetchError(f"Download of {url} failed after {_MAX_DOWNLOAD_RETRIES} attempts: {last_error}")

        if sha256 and digest != sha256.lower():
            archive_path.unlink(missing_ok=True)
            raise SourceFetchError(f"Checksum mismatch for {url}: expected {sha256}, got {digest}")

        try:
            extract_archive(archive_path, dest)
        finally:
            archive_path.unlink(missing_ok=True)

    def _download(self, url: str, archive_path: Path) -> str:
        """Stream url into archive_path and return its SHA256."""
        temp_file = Path(str(archive_path) + ".download")
        sha = hashlib.sha256()
        try:
            with requests.get(url, stream=True, timeout=_DOWNLOAD_TIMEOUT) as response:
                response.raise_for_status()
                with open(temp_file, "wb") as f:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            sha.update(chunk)
            temp_file.replace(archive_path)
        except BaseException:
            temp_file.unlink(missing_ok=True)
            raise
        return sha.hexdigest()

    # path

    def _fetch_path(self, source: Path, dest: Path) -> None:
        if not source.is_dir():
            raise SourceFetchError(f"Local source does not exist or is not a directory: {source}")
        if dest.exists():
            shutil.rmtree(dest)
        try:
            shutil.copytree(source, dest, symlinks=True)
        except (OSError, shutil.Error) as e:
            raise SourceFetchError(f"Failed to copy {source}: {e}") from e


def _extract_tar(tar: tarfile.TarFile, dest: Path) -> None:
    # Extraction filters arrived in 3.10.12 / 3.11.4
    if hasattr(tarfile, "data_filter"):
        tar.extractall(dest, filter="data")
        return

    root = dest.resolve()
    for member in tar.getmembers():
        target = (root / member.name).resolve()
        if not target.is_relative_to(root):
            raise tarfile.TarError(f"Member escapes the destination: {member.name}")
        if member.issym() or member.islnk():
            link_base = target.parent if member.issym() else root
            if not (link_base / member.linkname).resolve().is_relative_to(root):
                raise tarfile.TarError(f"Link escapes the destination: {member.name} -> {member.linkname}")
        if member.isdev():
            raise tarfile.TarError(f"Device file in archive: {member.name}")
    tar.extractall(dest)


def extract_archive(archive_path: Path, dest: Path) -> Path:
    """Extract a tar or zip archive into dest.

    Archives wrapping everything in a single top-level directory (GitHub-style)
    are flattened so dest holds the project files directly.

    Raises:
        SourceFetchError: If the format is unsupported or extraction fails.
    """
    name = archive_path.name.lower()
    temp_extract = dest.parent / f"temp_extract_{archive_path.name}"
    if temp_extract.exists():
        shutil.rmtree(temp_extract, ignore_errors=True)
    temp_extract.mkdir(parents=True)

    try:
        if name.endswith((".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz2", ".tar")):
            with tarfile.open(archive_path, "r:*") as tar:
                _extract_tar(tar, temp_extract)
        elif name.endswith(".zip"):
            with zipfile.ZipFile(archive_path, "r") as zf:
                zf.extractall(temp_extract)
        else:
            raise SourceFetchError(f"Unsupported archive format: {archive_path.name}")

        items = list(temp_extract.iterdir())
        source_dir = items[0] if len(items) == 1 and items[0].is_dir() else temp_extract

        if dest.exists():
            shutil.rmtree(dest)
        shutil.move(str(source_dir), str(dest))
        return dest
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
        raise SourceFetchError(f"Failed to extract {archive_path.name}: {e}") from e
    finally:
        if temp_extract.exists():
            shutil.rmtree(temp_extract, ignore_errors=True)
