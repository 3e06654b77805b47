"""
User Service：Discord 身份與錢包
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from database import transactional
from models import User, Wallet

logger = logging.getLogger(__name__)


@transactional
def upsert_discord_user(
    db: Session,
    discord_id: str,
    discord_name: str,
    avatar_url: Optional[str] = None
) -> User:
    """
    依 Discord id 新增或更新 user，並確保有錢包

    流程：
    1. 用 discord_id 找 user；找到就更新名稱與頭像，否則新增
    2. 沒有錢包就建立一個餘額 0 的錢包

    返回：
        User（commit 後會 expire，存取屬性時重新載入）
    """
    user = db.query(User).filter(User.discord_id == discord_id).first()
    if user:
        user.discord_name = discord_name
        user.avatar_url = avatar_url
        user.updated_at = datetime.now(timezone.utc)
    else:
        user = User(discord_id=discord_id, discord_name=discord_name, avatar_url=avatar_url)
        db.add(user)
        db.flush()
        logger.info(f"Created user {user.id} for Discord account {discord_name}")

    if not db.query(Wallet).filter(Wallet.user_id == user.id).first():
        db.add(Wallet(user_id=user.id, balance=0))

    return user
