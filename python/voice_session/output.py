"""
Transcript Mirror Writer.

Keeps a local JSON copy of each finalized call (outcome plus transcript
snapshot) so a call whose backend sync failed can be reconciled later.

Thread Safety:
    Writes for the same call id are serialized with an asyncio lock; reads
    are not coordinated with writes from other processes.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiofiles
from pydantic import ValidationError

from .models import CallOutcomeReport


__all__ = ["TranscriptMirrorWriter", "MirrorWriteError", "MirrorReadError"]


logger = logging.getLogger(__name__)


class MirrorWriteError(Exception):
    """Raised when writing a transcript mirror fails."""

    def __init__(self, path: Path, cause: Exception) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to write to {path}: {cause}")


class MirrorReadError(Exception):
    """Raised when reading a transcript mirror fails."""

    def __init__(self, path: Path, cause: Exception) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to read from {path}: {cause}")


def _format_utc_timestamp() -> str:
    """Return current UTC timestamp as ISO 8601 string with 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class TranscriptMirrorWriter:
    """
    Writes finalized call reports to JSON files.

    Output files are named: {call_id}_transcript.json

    Example:
        >>> writer = TranscriptMirrorWriter(Path("./output/transcripts"))
        >>> await writer.write_report(report)
        >>> writer.load_report(report.call_id).outcome
        <CallOutcome.CLOSED: 'closed'>
    """

    def __init__(self, output_dir: Path) -> None:
        """
        Initialize the mirror writer.

        Args:
            output_dir: Directory where mirror files will be written.
                       Created if it doesn't exist.
        """
        self.output_dir = Path(output_dir)
        self._lock = asyncio.Lock()
        self._ensure_output_dir()

    def _ensure_output_dir(self) -> None:
        """
        Create output directory if it doesn't exist.

        Raises:
            MirrorWriteError: If directory creation fails.
        """
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            logger.debug("Mirror directory ready: %s", self.output_dir)
        except OSError as e:
            raise MirrorWriteError(self.output_dir, e) from e

    def _get_output_path(self, call_id: str) -> Path:
        """Get the mirror file path for a call."""
        safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in call_id)
        return self.output_dir / f"{safe_id}_transcript.json"

    async def write_report(self, report: CallOutcomeReport) -> Path:
        """
        Write a finalized call report, overwriting any earlier mirror.

        Args:
            report: The outcome report produced by finalization.

        Returns:
            Path to the written file.

        Raises:
            MirrorWriteError: If file write fails.
        """
        output_path = self._get_output_path(report.call_id)

        data = report.model_dump(mode="json")
        data["_meta"] = {
            "written_at": _format_utc_timestamp(),
            "version": "1.0",
        }

        async with self._lock:
            try:
                async with aiofiles.open(output_path, "w", encoding="utf-8") as f:
                    await f.write(json.dumps(data, indent=2, ensure_ascii=False))
            except OSError as e:
                raise MirrorWriteError(output_path, e) from e

        logger.info(
            "Mirrored call %s (%d items, synced=%s) to %s",
            report.call_id,
            len(report.transcript),
            report.synced,
            output_path,
        )
        return output_path

    def load_report(self, call_id: str) -> Optional[CallOutcomeReport]:
        """
        Load a mirrored call report.

        Args:
            call_id: The backend call id.

        Returns:
            CallOutcomeReport if a mirror exists, None otherwise.

        Raises:
            MirrorReadError: If file read fails or contains invalid JSON/data.
        """
        output_path = self._get_output_path(call_id)

        if not output_path.exists():
            logger.debug("No mirror file found for call %s", call_id)
            return None

        try:
            with open(output_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise MirrorReadError(output_path, e) from e
        except OSError as e:
            raise MirrorReadError(output_path, e) from e

        if not isinstance(data, dict):
            raise MirrorReadError(output_path, ValueError("mirror is not a JSON object"))
        data.pop("_meta", None)
        try:
            return CallOutcomeReport.model_validate(data)
        except ValidationError as e:
            raise MirrorReadError(output_path, e) from e

    def list_unsynced(self) -> list[str]:
        """
        Call ids whose mirror records a failed backend sync.

        Unreadable files are skipped with a warning.
        """
        unsynced: list[str] = []
        for path in sorted(self.output_dir.glob("*_transcript.json")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Skipping unreadable mirror %s: %s", path, e)
                continue
            if isinstance(data, dict) and not data.get("synced", False):
                unsynced.append(data.get("call_id", path.stem))
        return unsynced
