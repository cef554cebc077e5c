#!/usr/bin/env python3

import json
import logging
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SEVERITIES = ("Trace", "Message", "Warning", "Error")

LOG_LEVELS = {
    "Trace": logging.DEBUG,
    "Message": logging.INFO,
    "Warning": logging.WARNING,
    "Error": logging.ERROR,
}

@dataclass(frozen=True)
class Message:
    source: str
    code: str
    severity: str
    message: str

def serialize_source(source):
    """Serialize a message source to JSON, falling back to repr() for values JSON cannot encode."""
    try:
        return json.dumps(source, sort_keys=True, default=str)
    except (TypeError, ValueError, RecursionError):
        pass
    try:
        return repr(source)
    except RecursionError:
        return object.__repr__(source)

def log_level(severity):
    if isinstance(severity, str):
        return LOG_LEVELS.get(severity, logging.INFO)
    return logging.INFO

class MessageListener:
    """Collects the messages an evaluation engine emits while executing a library."""

    def __init__(self):
        self.messages = []
        self._lock = threading.Lock()

    def on_message(self, source, code, severity, message):
        """Record a message.

        Args:
            source: object the message is about, captured as JSON at call time
            code: token coding the message
            severity: Trace | Message | Warning | Error
            message: content of the message
        """
        record = Message(
            source=serialize_source(source),
            code=code,
            severity=severity,
            message=message
        )
        with self._lock:
            self.messages.append(record)
        logger.log(log_level(severity), "%s [%s] %s", severity, code, message)

    def with_severity(self, severity):
        with self._lock:
            return [record for record in self.messages if record.severity == severity]

    def errors(self):
        return self.with_severity("Error")

    def __len__(self):
        return len(self.messages)
