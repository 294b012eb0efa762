"""
Low-stock watch.

Every few seconds the watcher looks up ACTIVE books running low on stock, logs
them and pushes the list to every client connected on the WebSocket channel.
Delivery is best effort: no acknowledgement, no retry.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from fastapi import WebSocket
from pymongo import ASCENDING
from pymongo.database import Database

from database import serialize

logger = logging.getLogger(__name__)

LOW_STOCK_PROJECTION = {"title": 1, "author": 1, "price": 1, "stock": 1, "status": 1}


def find_low_stock_books(db: Database, threshold: int, limit: Optional[int] = None) -> List[dict]:
    cursor = db["book"].find(
        {"stock": {"$lt": threshold}, "status": "ACTIVE"},
        LOW_STOCK_PROJECTION,
    ).sort("stock", ASCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


class ConnectionManager:
    """Keeps track of the WebSocket clients subscribed to restock alerts."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"Socket connected ({len(self.active_connections)} open)")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"Socket disconnected ({len(self.active_connections)} open)")

    async def broadcast(self, message: dict) -> int:
        """Send to every client; returns how many sends succeeded."""
        delivered = 0
        for websocket in list(self.active_connections):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping socket after failed send: {e}")
                self.disconnect(websocket)
        return delivered


class LowStockWatcher:
    def __init__(self, get_db: Callable[[], Database], manager: ConnectionManager,
                 threshold: int, interval: float):
        self.get_db = get_db
        self.manager = manager
        self.threshold = threshold
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> List[dict]:
        # pymongo blocks, keep it off the event loop
        books = await asyncio.to_thread(find_low_stock_books, self.get_db(), self.threshold)
        books = serialize(books)
        if books:
            logger.info(f"Scheduled Task: {len(books)} books below {self.threshold} in stock")
            for book in books:
                logger.info(f"  {book['title']} by {book.get('author')}: {book['stock']} left")
        else:
            logger.info("No Book Found")
        await self.manager.broadcast({"message": "Restock these books", "books": books})
        return books

    async def run(self):
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Low-stock check failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self.run())
            logger.info(f"Low-stock watch started (every {self.interval}s, threshold {self.threshold})")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Low-stock watch stopped")
