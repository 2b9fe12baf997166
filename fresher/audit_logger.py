import os

from fresher.event_bus import EventBus, LoopEvent


class AuditLogger:
    """
    Audit Logger that subscribes to an Event Bus and writes events
    to an append-only JSONL file, one LoopEvent per line.
    """
    def __init__(self, file_path: str, event_bus: EventBus):
        self.file_path = file_path

        os.makedirs(os.path.dirname(os.path.abspath(self.file_path)), exist_ok=True)
        event_bus.subscribe(self.log_event)

    def log_event(self, event: LoopEvent) -> None:
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")
