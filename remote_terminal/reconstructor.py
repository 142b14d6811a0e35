"""
Turns the raw text accumulated for a session into transcript lines.

The remote shell echoes each submitted command before its real output.
Commands the caller sent and that have not been answered yet sit at the
tail of the history, so the echo filter is taken from that tail on every
pass.
"""

import re
from collections import Counter
from typing import List, Sequence

from remote_terminal.models import LINE_COMMAND, LINE_OUTPUT, Session, TranscriptLine
from remote_terminal.utils import log_debug

_LINE_BREAK = re.compile(r"\r\n|\r|\n")

def split_lines(text: str) -> List[str]:
    lines = []
    for line in _LINE_BREAK.split(text or ""):
        stripped = line.strip()
        if stripped:
            lines.append(stripped)
    return lines

def pending_command_echoes(history: Sequence[TranscriptLine]) -> Counter:
    echoes: Counter = Counter()
    for line in reversed(history):
        if line.type != LINE_COMMAND:
            break
        echoes[line.content.strip()] += 1
    return echoes

def reconstruct(session: Session, content: str) -> List[TranscriptLine]:
    """Append the lines that arrived since the last pass to the session history.

    The caller must hold ``session.lock``. Returns the lines that were
    appended, which may be empty even when the offset advanced.
    """
    processed = session.last_processed_length
    if len(content) <= processed:
        if len(content) < processed:
            log_debug(
                f"session {session.id}: content shrank from {processed} to {len(content)} chars, ignored"
            )
        return []

    echoes = pending_command_echoes(session.history)
    appended: List[TranscriptLine] = []
    for text in split_lines(content[processed:]):
        if echoes[text] > 0:
            echoes[text] -= 1
            continue
        appended.append(session.append_line(LINE_OUTPUT, text))

    session.raw_content = content
    session.last_processed_length = len(content)
    return appended
