"""
Broadcast Channel：把狀態變化推給所有線上連線
"""
import json
import logging

from core.connection_registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class Broadcaster:
    """
    Fire-and-forget 廣播

    訊息只序列化一次，不 await 地放進每條連線的 outbox；
    outbox 滿了或關了只會丟掉那一份。
    """

    def __init__(self, connections: ConnectionRegistry):
        self.connections = connections

    def publish(self, message: dict) -> int:
        """
        送給所有連線

        返回：
            成功放進 outbox 的連線數
        """
        payload = json.dumps(message)
        delivered = 0
        for connection in self.connections:
            if connection.send_text(payload):
                delivered += 1
        logger.debug(f"Broadcast {message.get('type')} to {delivered}/{len(self.connections)} connections")
        return delivered
