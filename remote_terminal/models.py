import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

from remote_terminal.utils import now_ms

LINE_COMMAND = "command"
LINE_OUTPUT = "output"
LINE_ERROR = "error"

@dataclass
class TranscriptLine:
    type: str
    content: str
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "content": self.content, "timestamp": self.timestamp}

@dataclass
class Session:
    id: str
    path: str
    name: str = ""
    # path is the start directory; a remote `cd` does not update it
    raw_content: str = ""
    last_processed_length: int = 0
    history: List[TranscriptLine] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    # held across fetch-and-apply and across command append-and-send
    op_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def append_line(self, line_type: str, content: str) -> TranscriptLine:
        line = TranscriptLine(type=line_type, content=content)
        self.history.append(line)
        return line

    def transcript(self, since: int = 0) -> List[Dict[str, Any]]:
        with self.lock:
            return [line.to_dict() for line in self.history[max(0, since):]]

    def info(self) -> Dict[str, Any]:
        with self.lock:
            lines = len(self.history)
            processed = self.last_processed_length
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "lines": lines,
            "processed_chars": processed,
            "created_at": self.created_at.isoformat(),
        }
