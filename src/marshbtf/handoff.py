"""Handoff stores: durable, write-once slots for replica outputs.

A replica writes its draws exactly once and the aggregator reads them exactly
once. LocalHandoffStore persists ArviZ NetCDF files and works across
processes; MemoryHandoffStore keeps objects in a dict for in-process runs.
"""

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

import arviz as az

from marshbtf.errors import HandoffError


class HandoffStore(ABC):
    """Write-once keyed storage for one run's replica outputs."""

    #: Whether a record written in a child process is visible to the parent.
    process_safe: bool = False

    @abstractmethod
    def write(self, replica_id: int, idata: az.InferenceData) -> str:
        """Persist one replica's draws and return its location."""

    @abstractmethod
    def read(self, location: str) -> az.InferenceData:
        """Load a previously written record."""


class LocalHandoffStore(HandoffStore):
    """NetCDF files under a run-owned directory (a fresh temp dir by default).

    Cleanup is left to the host's temp-storage lifecycle or to the RunContext
    that owns the directory.
    """

    process_safe = True

    def __init__(self, root: Path | str | None = None) -> None:
        if root is None:
            root = tempfile.mkdtemp(prefix="marshbtf-handoff-")
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"LocalHandoffStore({str(self.root)!r})"

    def path_for(self, replica_id: int) -> Path:
        return self.root / f"replica_{replica_id:03d}.nc"

    def write(self, replica_id: int, idata: az.InferenceData) -> str:
        path = self.path_for(replica_id)
        if path.exists():
            msg = f"Handoff record for replica {replica_id} already exists: {path}"
            raise HandoffError(msg)
        # Write to a sibling temp file so readers never see a partial record.
        tmp = path.with_suffix(f".{os.getpid()}.tmp")
        idata.to_netcdf(str(tmp))
        os.replace(tmp, path)
        return str(path)

    def read(self, location: str) -> az.InferenceData:
        path = Path(location)
        if not path.exists():
            msg = f"Handoff record not found: {path}"
            raise HandoffError(msg)
        try:
            idata = az.from_netcdf(str(path))
            # from_netcdf is lazy; load now so the file handle is released
            idata.posterior.load()
        except (OSError, ValueError, KeyError, AttributeError) as exc:
            msg = f"Unreadable handoff record {path}: {exc}"
            raise HandoffError(msg) from exc
        return idata


class MemoryHandoffStore(HandoffStore):
    """In-process dict store. Only valid with the sequential backend."""

    process_safe = False

    def __init__(self) -> None:
        self._records: dict[str, az.InferenceData] = {}

    def write(self, replica_id: int, idata: az.InferenceData) -> str:
        location = f"memory://replica_{replica_id:03d}"
        if location in self._records:
            msg = f"Handoff record for replica {replica_id} already exists"
            raise HandoffError(msg)
        self._records[location] = idata
        return location

    def read(self, location: str) -> az.InferenceData:
        try:
            return self._records[location]
        except KeyError:
            msg = f"Handoff record not found: {location}"
            raise HandoffError(msg) from None

    def __len__(self) -> int:
        return len(self._records)
