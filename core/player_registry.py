"""
Player Registry：本 round 的下注，以 connection 為 key

每個 round 開始時是空的，round reset 時清空。
一條連線每 round 最多一個 player；cashedOutAt 一旦設定就不再改變（只有入帳失敗時撤回）。
"""
from dataclasses import dataclass
from typing import Iterator, Optional

from core.exceptions import AlreadyCashedOut, PlayerAlreadyRegistered


@dataclass
class Player:
    connection_id: str
    user_id: int
    display_name: str
    bet: int
    cashed_out_at: Optional[float] = None

    @property
    def has_cashed_out(self) -> bool:
        return self.cashed_out_at is not None

    def to_wire(self) -> dict:
        """Client 看到的格式；尚未 cashout 時不帶 cashedOutAt"""
        data = {
            "userId": self.user_id,
            "discordName": self.display_name,
            "bet": self.bet,
        }
        if self.cashed_out_at is not None:
            data["cashedOutAt"] = self.cashed_out_at
        return data


class PlayerRegistry:
    """本 round 的所有 player"""

    def __init__(self):
        self._players: dict[str, Player] = {}

    def __len__(self) -> int:
        return len(self._players)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._players

    def __iter__(self) -> Iterator[Player]:
        return iter(list(self._players.values()))

    def get(self, connection_id: str) -> Optional[Player]:
        return self._players.get(connection_id)

    def add(self, player: Player) -> Player:
        if player.connection_id in self._players:
            raise PlayerAlreadyRegistered(player.connection_id)
        self._players[player.connection_id] = player
        return player

    def remove(self, connection_id: str) -> Optional[Player]:
        return self._players.pop(connection_id, None)

    def lock_in(self, connection_id: str, multiplier: float) -> Player:
        """
        記錄 player 的 cashout 倍率

        Raises:
            KeyError: 這條連線沒有 player
            AlreadyCashedOut: 本 round 已經 cashout 過
        """
        player = self._players[connection_id]
        if player.has_cashed_out:
            raise AlreadyCashedOut(connection_id)
        player.cashed_out_at = multiplier
        return player

    def clear(self) -> None:
        self._players.clear()

    def to_wire(self) -> list[dict]:
        return [player.to_wire() for player in self._players.values()]
