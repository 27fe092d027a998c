# artifacts.py
"""
Run-scoped artifact store.

Artifacts uploaded by a job are *staged* under that job's name and only
become visible to other jobs once the producer succeeds (`commit`). A
failed or cancelled job's staged artifacts are dropped (`discard`).
Names are write-once per run: a second upload under a name that is already
visible or staged is a DuplicateArtifactError unless the store was created
with allow_overwrite=True.
"""
from __future__ import annotations

import io
import tarfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ArtifactNotFoundError, DuplicateArtifactError


@dataclass(frozen=True)
class Artifact:
    name: str
    blob: bytes
    producer: str | None = None

    @property
    def size(self) -> int:
        return len(self.blob)


class ArtifactStore:
    def __init__(self, *, allow_overwrite: bool = False):
        self.allow_overwrite = allow_overwrite
        self._lock = threading.Lock()
        self._visible: Dict[str, Artifact] = {}
        self._staged: Dict[str, Artifact] = {}

    def put(self, name: str, blob: bytes, *, producer: str | None = None) -> Artifact:
        """
        Store `blob` under `name`. With a producer the artifact is staged
        until commit(producer); without one it is visible immediately.
        """
        if not name:
            raise ValueError("Artifact name must not be empty")
        artifact = Artifact(name=name, blob=bytes(blob), producer=producer)
        with self._lock:
            existing = self._visible.get(name) or self._staged.get(name)
            if existing is not None and not self.allow_overwrite:
                raise DuplicateArtifactError(name, existing.producer)
            if producer is None:
                self._visible[name] = artifact
            else:
                self._staged[name] = artifact
        return artifact

    def get(self, name: str) -> bytes:
        with self._lock:
            artifact = self._visible.get(name)
        if artifact is None:
            raise ArtifactNotFoundError(name)
        return artifact.blob

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._visible

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._visible)

    def items(self) -> List[Artifact]:
        with self._lock:
            return [self._visible[n] for n in sorted(self._visible)]

    def commit(self, producer: str) -> List[str]:
        """Publish everything `producer` staged. Returns the published names."""
        with self._lock:
            names = sorted(n for n, a in self._staged.items() if a.producer == producer)
            for name in names:
                self._visible[name] = self._staged.pop(name)
        return names

    def discard(self, producer: str) -> List[str]:
        with self._lock:
            names = sorted(n for n, a in self._staged.items() if a.producer == producer)
            for name in names:
                del self._staged[name]
        return names

    def clear(self) -> None:
        with self._lock:
            self._visible.clear()
            self._staged.clear()


class JobArtifacts:
    """The slice of an ArtifactStore a single job (and its step invokers) sees."""

    def __init__(self, store: ArtifactStore, job: str):
        self.store = store
        self.job = job

    def put(self, name: str, blob: bytes) -> Artifact:
        return self.store.put(name, blob, producer=self.job)

    def get(self, name: str) -> bytes:
        return self.store.get(name)

    def names(self) -> List[str]:
        return self.store.names()


# ---------------------------------------------------------------------
# Packing helpers (files/dirs <-> tar.gz blob)
# ---------------------------------------------------------------------

def pack_path(path: Path) -> Optional[bytes]:
    """
    Pack a file or directory into a tar.gz blob. Directory contents are
    stored relative to the directory itself. Returns None if nothing exists.
    """
    path = Path(path)
    if not path.exists():
        return None
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        if path.is_dir():
            for p in sorted(path.rglob("*")):
                tar.add(str(p), arcname=p.relative_to(path).as_posix(), recursive=False)
        else:
            tar.add(str(path), arcname=path.name)
    return buf.getvalue()


def unpack_blob(blob: bytes, dest: Path) -> List[str]:
    """Extract a blob produced by pack_path into dest. Returns extracted member names."""
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        members = tar.getmembers()
        for m in members:
            target = (dest / m.name).resolve()
            if target != root and root not in target.parents:
                raise ValueError(f"Refusing to extract outside destination: {m.name}")
            if m.issym() or m.islnk():
                raise ValueError(f"Refusing to extract link member: {m.name}")
        tar.extractall(dest)
    return [m.name for m in members]
