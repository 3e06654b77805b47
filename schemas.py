"""
Pydantic schemas：即時協定的 frame 與 HTTP response
"""
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from models import RoundPhase


# ============ Client -> Server frames ============

class AuthPayload(BaseModel):
    user_id: int = Field(alias="userId")


class AuthMessage(BaseModel):
    type: Literal["auth"]
    payload: AuthPayload


class BetPayload(BaseModel):
    # 可以是小數，engine 會無條件捨去
    amount: float


class BetMessage(BaseModel):
    type: Literal["bet"]
    payload: BetPayload


class CashoutMessage(BaseModel):
    type: Literal["cashout"]


ClientMessage = Annotated[
    Union[AuthMessage, BetMessage, CashoutMessage],
    Field(discriminator="type")
]

client_message_adapter = TypeAdapter(ClientMessage)


# ============ HTTP responses ============

class PlayerResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(alias="userId")
    discord_name: str = Field(alias="discordName")
    bet: int
    cashed_out_at: Optional[float] = Field(default=None, alias="cashedOutAt")


class GameStateResponse(BaseModel):
    phase: RoundPhase
    multiplier: float
    players: list[PlayerResponse]
