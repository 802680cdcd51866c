import os
import time
import logging
from collections import deque
from pathlib import Path
from typing import Callable, Dict, IO, List, Sequence

log = logging.getLogger(__name__)


def read_last_lines(path: Path, count: int) -> List[str]:
    """
    Returns the last `count` lines of a text file, without trailing newlines.
    A missing file yields an empty list.
    """
    if count <= 0 or not Path(path).exists():
        return []
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        return [line.rstrip('\n') for line in deque(f, maxlen=count)]


def follow_files(paths: Sequence[Path], should_stop: Callable[[], bool],
                 emit: Callable[[Path, str], None], poll_interval: float = 0.2) -> None:
    """
    Tails several files at once, starting at their current end, and calls
    `emit(path, line)` for every new line until `should_stop()` is true.
    Files that do not exist yet are read from their start once they appear, and a file
    that shrinks (rolled over or truncated) is read again from the start.

    :param paths: The files to follow.
    :param should_stop: Polled between reads; returning True ends the loop.
    :param emit: Receives each new line, stripped of its newline.
    :param poll_interval: Sleep between polls when no file had new data.
    """
    handles: Dict[Path, IO[str]] = {}
    existing_at_start = {path for path in paths if path.exists()}
    try:
        while not should_stop():
            got_data = False
            for path in paths:
                handle = handles.get(path)
                if handle is None:
                    if not path.exists():
                        continue
                    handle = open(path, 'r', encoding='utf-8', errors='replace')
                    if path in existing_at_start:
                        handle.seek(0, os.SEEK_END)
                    handles[path] = handle
                elif path.exists() and path.stat().st_size < handle.tell():
                    log.debug(f"'{path}' was truncated or rolled over. Reading from the start.")
                    handle.close()
                    handle = open(path, 'r', encoding='utf-8', errors='replace')
                    handles[path] = handle

                line = handle.readline()
                while line:
                    got_data = True
                    emit(path, line.rstrip('\n'))
                    line = handle.readline()
            if not got_data:
                time.sleep(poll_interval)
    finally:
        for handle in handles.values():
            handle.close()
