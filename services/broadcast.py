import asyncio
import json
from collections import defaultdict
from typing import Any, Dict, List

from fastapi import WebSocket
from loguru import logger

# In-process fan-out of live car positions to websocket subscribers.
subscribers: Dict[str, List[WebSocket]] = defaultdict(list)
queue: asyncio.Queue = asyncio.Queue()


def car_topic(car_id: int) -> str:
    return f"car:{car_id}"


def publish(topic: str, payload: Dict[str, Any]) -> None:
    queue.put_nowait({"topic": topic, "payload": payload})


def subscribe(topic: str, ws: WebSocket) -> None:
    subscribers[topic].append(ws)


def unsubscribe(topic: str, ws: WebSocket) -> None:
    sockets = subscribers.get(topic, [])
    if ws in sockets:
        sockets.remove(ws)


async def broadcast(message: Dict[str, Any]) -> None:
    topic = message["topic"]
    text = json.dumps(message["payload"])
    for ws in list(subscribers.get(topic, [])):
        try:
            await ws.send_text(text)
        except Exception as e:
            logger.warning(f"Dropping subscriber of {topic}: {e}")
            unsubscribe(topic, ws)


async def pump():
    while True:
        message = await queue.get()
        await broadcast(message)
