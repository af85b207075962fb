"""Progress extraction from provider log text.

Providers report progress as free-text log lines (tqdm bars, "step N/M"
counters). This adapter turns them into (percent, message) pairs so the Job
Runner never sees raw logs.

Examples of recognized lines:
    flux_train_replicate:  45%|████▌     | 450/1000 [05:12<06:21,  1.44it/s]
    Step 500/1000, loss 0.0231
    Training progress: 72.5%
"""

import re

_PERCENT_RE = re.compile(r"(?<![\d.])(\d{1,3}(?:\.\d+)?)\s?%")
_STEPS_RE = re.compile(r"(?<!\d)(\d+)\s*/\s*(\d+)(?!\d)")


def parse_progress_line(line: str) -> int | None:
    """Extract a percentage from a single log line.

    An explicit percentage wins over a step counter.

    Returns:
        Integer percent in [0, 100], or None if the line carries no progress
    """
    match = _PERCENT_RE.search(line)
    if match:
        value = float(match.group(1))
        if 0 <= value <= 100:
            return int(value)

    match = _STEPS_RE.search(line)
    if match:
        done, total = int(match.group(1)), int(match.group(2))
        if total > 0 and done <= total:
            return int(done * 100 / total)

    return None


def parse_latest_progress(logs: str | None) -> tuple[int, str] | None:
    """Return (percent, line) for the last log line that carries progress.

    Args:
        logs: Accumulated provider logs (may contain carriage-return updates)

    Returns:
        (percent, message) or None if no line carries progress
    """
    if not logs:
        return None

    lines = re.split(r"[\r\n]+", logs)
    for line in reversed(lines):
        line = line.strip()
        if not line:
            continue
        percent = parse_progress_line(line)
        if percent is not None:
            return percent, line
    return None
