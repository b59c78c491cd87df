import re
import time
from pathlib import Path

from ezvoucher.engine.errors import LabelExtractionError
from ezvoucher.engine.models import FileTask
from ezvoucher.utils.logger import get_logger

SPREADSHEET_EXTENSIONS = (".xlsx", ".xls", ".xlsm")
DOWNLOAD_EXTENSIONS = (".xlsx", ".xls")
LABEL_PATTERN = re.compile(r"\(([^)]+)\)")
STALE_DOWNLOAD_SECONDS = 5 * 60

log = get_logger("files")


def find_file(directory: str | Path, number: int) -> Path | None:
    """Return the spreadsheet whose name starts with ``"<number>."``, first in name order."""
    directory = Path(directory)
    if not directory.is_dir():
        return None

    prefix = f"{number}."
    matches = sorted(
        (
            path for path in directory.iterdir()
            if path.is_file()
            and path.name.startswith(prefix)
            and path.suffix.lower() in SPREADSHEET_EXTENSIONS
        ),
        key=lambda path: path.name,
    )
    if len(matches) > 1:
        log.warning("Several files share a sequence number, using the first",
                    number=number, files=[m.name for m in matches])
    return matches[0] if matches else None


def extract_label(path: str | Path) -> str:
    """Return the trimmed text of the first parenthesized group in the file name."""
    name = Path(path).name
    match = LABEL_PATTERN.search(name)
    if not match or not match.group(1).strip():
        raise LabelExtractionError(name)
    return match.group(1).strip()


def build_task(directory: str | Path, number: int) -> FileTask | None:
    """Locate file ``number`` and parse its label; ``None`` when the file is absent."""
    path = find_file(directory, number)
    if path is None:
        return None
    return FileTask(sequence_number=number, source_path=path, label=extract_label(path))


def scan_range(directory: str | Path, start: int, end: int) -> list[dict]:
    """Describe every sequence number in the range without touching the browser."""
    rows = []
    for number in range(start, end + 1):
        path = find_file(directory, number)
        row = {"number": number, "file": path.name if path else None, "label": None, "error": None}
        if path is not None:
            try:
                row["label"] = extract_label(path)
            except LabelExtractionError as e:
                row["error"] = str(e)
        rows.append(row)
    return rows


def find_latest_download(directory: str | Path, since: float | None = None) -> Path | None:
    """Newest spreadsheet in the downloads folder, ignoring Office lock files."""
    directory = Path(directory)
    if not directory.is_dir():
        return None

    candidates = [
        path for path in directory.iterdir()
        if path.is_file()
        and path.suffix.lower() in DOWNLOAD_EXTENSIONS
        and not path.name.startswith("~$")
    ]
    if since is not None:
        candidates = [path for path in candidates if path.stat().st_mtime >= since]
    if not candidates:
        return None

    latest = max(candidates, key=lambda path: path.stat().st_mtime)
    age = time.time() - latest.stat().st_mtime
    if age > STALE_DOWNLOAD_SECONDS:
        log.warning("Latest spreadsheet in downloads is older than 5 minutes",
                    file=latest.name, age_seconds=int(age))
    return latest
