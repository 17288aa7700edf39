"""Temp-then-rename publication of processed screenshots and fingerprint sidecars."""

from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List

from screenshotter.history import atomic_write_text

LOGGER = logging.getLogger(__name__)

IMAGE_SUFFIX = ".png"
TEMP_MARKER = "_temp"
SIDECAR_SUFFIX = ".crc32"

_PUBLIC_NAME = re.compile(r"^(\d+)\.png$")


@dataclass(frozen=True, slots=True)
class ArtifactPaths:
    """Filesystem locations for one target index."""

    index: int
    public: Path
    temp: Path
    sidecar: Path

    @classmethod
    def for_index(cls, root: Path, index: int) -> ArtifactPaths:
        public = root / f"{index}{IMAGE_SUFFIX}"
        return cls(
            index=index,
            public=public,
            temp=root / f"{index}{TEMP_MARKER}{IMAGE_SUFFIX}",
            sidecar=public.with_name(public.name + SIDECAR_SUFFIX),
        )


class StagedArtifact:
    """Writer handed out by ``ArtifactPublisher.stage``; only touches the temp path."""

    def __init__(self, paths: ArtifactPaths) -> None:
        self.paths = paths
        self.written = False

    def write(self, data: bytes) -> None:
        with open(self.paths.temp, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        self.written = True


@dataclass(frozen=True, slots=True)
class PublishedArtifact:
    index: int
    path: Path
    sidecar: Path
    size: int
    modified: float


def is_temp_name(name: str) -> bool:
    return TEMP_MARKER in Path(name).name


class ArtifactPublisher:
    """Owns the public screenshot directory polled by readers."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def paths(self, index: int) -> ArtifactPaths:
        return ArtifactPaths.for_index(self.root, index)

    @contextmanager
    def stage(self, index: int) -> Iterator[StagedArtifact]:
        """Yield a temp-path writer, renaming it into place only on a clean exit.

        On any exception the temp file is deleted and the previously published
        file for ``index`` is left exactly as it was.
        """

        self.root.mkdir(parents=True, exist_ok=True)
        paths = self.paths(index)
        staged = StagedArtifact(paths)
        try:
            yield staged
            if not staged.written:
                raise RuntimeError(f"Nothing was written for target {index}")
            os.replace(paths.temp, paths.public)
        except BaseException:
            _remove_quietly(paths.temp)
            raise
        LOGGER.debug("Published %s", paths.public)

    def write_sidecar(self, index: int, fingerprint: str) -> Path:
        paths = self.paths(index)
        atomic_write_text(paths.sidecar, fingerprint)
        return paths.sidecar

    def read_sidecar(self, index: int) -> str | None:
        try:
            return self.paths(index).sidecar.read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None

    def list_published(self) -> List[PublishedArtifact]:
        if not self.root.is_dir():
            return []
        artifacts: List[PublishedArtifact] = []
        for entry in self.root.iterdir():
            match = _PUBLIC_NAME.match(entry.name)
            if not match or not entry.is_file():
                continue
            stat = entry.stat()
            index = int(match.group(1))
            artifacts.append(
                PublishedArtifact(
                    index=index,
                    path=entry,
                    sidecar=self.paths(index).sidecar,
                    size=stat.st_size,
                    modified=stat.st_mtime,
                )
            )
        return sorted(artifacts, key=lambda artifact: artifact.index)

    def resolve_public(self, name: str) -> Path:
        """Map a request path onto a published file, refusing temp names and traversal."""

        if is_temp_name(name):
            raise FileNotFoundError(name)
        target = (self.root / name).resolve()
        try:
            target.relative_to(self.root.resolve())
        except ValueError:
            raise FileNotFoundError(name) from None
        if not target.is_file():
            raise FileNotFoundError(target)
        return target


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        LOGGER.warning("Failed to remove temp file %s: %s", path, exc)
