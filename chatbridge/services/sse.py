import json
from dataclasses import dataclass
from typing import AsyncIterator, Optional


@dataclass
class SSEEvent:
    event: str
    data: str
    id: Optional[str] = None


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[SSEEvent]:
    """Group raw server-sent-event lines into events."""
    event_name = "message"
    data_lines: list[str] = []
    event_id = None

    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data_lines:
                yield SSEEvent(event=event_name, data="\n".join(data_lines), id=event_id)
            event_name, data_lines, event_id = "message", [], None
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event_name = value
        elif field == "data":
            data_lines.append(value)
        elif field == "id":
            event_id = value

    if data_lines:
        yield SSEEvent(event=event_name, data="\n".join(data_lines), id=event_id)


def format_sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"
