"""Reusable run context for structured stage output.

Every stage (calibration, reconstruction, validation) can run inside a
RunContext to get:
  - Structured output directories: results/<stage>/<date>/data/ + handoff/
  - Automatic console log capture (run_log.txt)
  - Run metadata (run_info.json): git hash, timestamps, parameters
  - A `latest` symlink pointing to the most recent successful run

Same-day reruns get .1, .2, ... suffixes so nothing is overwritten.

Usage:
    with RunContext("calibration", params=asdict(config)) as ctx:
        result = run_calibration(counts, elevation, config, ctx=ctx)
        # parquet tables land in ctx.data_dir, replica NetCDF in ctx.handoff_dir
"""

import io
import json
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType
from typing import TextIO

from marshbtf.config import VERSION


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


class _TeeStream:
    """Wraps a stream to duplicate output to both the original stream and a buffer.

    All print() output goes to both the console (so the user sees progress)
    and an internal StringIO buffer (captured for run_log.txt).
    """

    def __init__(self, original: io.TextIOBase) -> None:
        self._original = original
        self._buffer = io.StringIO()

    def write(self, data: str) -> int:
        self._original.write(data)
        self._buffer.write(data)
        return len(data)

    def flush(self) -> None:
        self._original.flush()

    def getvalue(self) -> str:
        return self._buffer.getvalue()


def _git_commit_hash() -> str:
    """Get the current git commit hash, or 'unknown' if not in a repo."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass
    return "unknown"


def _format_elapsed(seconds: float) -> str:
    """Format elapsed seconds into a human-readable string.

    Examples: "3.2s", "1m 45s", "1h 12m 5s"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m {secs}s"


def _next_run_label(stage_dir: Path, today: str) -> str:
    """Return a unique run label for today: "261017", then "261017.1", ...

    Checks for existing directories (not symlinks) under *stage_dir*.
    """
    if not (stage_dir / today).exists() or (stage_dir / today).is_symlink():
        return today

    n = 1
    while (stage_dir / f"{today}.{n}").exists():
        n += 1
    return f"{today}.{n}"


class RunContext:
    """Context manager that sets up structured output for one stage run.

    Creates the directory tree, captures console output, and writes
    metadata on exit.

    Attributes:
        stage: Stage name (e.g. "calibration").
        params: Parameters to record in run_info.json.
        run_dir: Root of this run's output (results/<stage>/<label>/).
        data_dir: Directory for parquet tables.
        handoff_dir: Directory for replica handoff records.
    """

    def __init__(
        self,
        stage: str,
        params: dict | None = None,
        results_root: Path | None = None,
    ) -> None:
        self.stage = stage
        self.params = params or {}

        root = results_root or Path("results")
        today = datetime.now(timezone.utc).strftime("%y%m%d")
        self._stage_dir = root / stage
        self._run_label = _next_run_label(self._stage_dir, today)
        self.run_dir = self._stage_dir / self._run_label
        self.data_dir = self.run_dir / "data"
        self.handoff_dir = self.run_dir / "handoff"

        self._today = today
        self._tee: _TeeStream | None = None
        self._original_stdout: TextIO | None = None
        self._start_time: datetime | None = None

    def __enter__(self) -> "RunContext":
        self.setup()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.finalize(failed=exc_type is not None)

    def setup(self) -> None:
        """Create directories and start log capture."""
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(exist_ok=True)
        self.handoff_dir.mkdir(exist_ok=True)

        self._original_stdout = sys.stdout
        self._tee = _TeeStream(sys.stdout)
        sys.stdout = self._tee  # type: ignore[assignment]
        self._start_time = datetime.now(timezone.utc)

    def finalize(self, *, failed: bool = False) -> None:
        """Write run_info.json, run_log.txt, and update latest symlink."""
        # Restore stdout before writing metadata (so our writes aren't captured)
        log_text = ""
        if self._tee is not None:
            log_text = self._tee.getvalue()
        if self._original_stdout is not None:
            sys.stdout = self._original_stdout  # type: ignore[assignment]

        (self.run_dir / "run_log.txt").write_text(log_text, encoding="utf-8")

        end_time = datetime.now(timezone.utc)
        elapsed_seconds = (end_time - self._start_time).total_seconds() if self._start_time else 0.0
        run_info = {
            "stage": self.stage,
            "run_date": self._today,
            "run_label": self._run_label,
            "status": "failed" if failed else "ok",
            "timestamp_start": (self._start_time.isoformat() if self._start_time else None),
            "timestamp_end": end_time.isoformat(),
            "elapsed_seconds": round(elapsed_seconds, 1),
            "elapsed_display": _format_elapsed(elapsed_seconds),
            "git_commit": _git_commit_hash(),
            "package_version": VERSION,
            "python_version": sys.version,
            "params": self.params,
        }
        with open(self.run_dir / "run_info.json", "w") as f:
            json.dump(run_info, f, indent=2, default=str)

        print(f"\n{self.stage.upper()} completed in {run_info['elapsed_display']}")

        # Failed runs keep their directory but never become `latest`
        if not failed:
            latest = self._stage_dir / "latest"
            if latest.is_symlink() or latest.exists():
                latest.unlink()
            latest.symlink_to(self._run_label)
