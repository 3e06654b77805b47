#!/usr/bin/env python3
"""
Casino 管理 CLI

新部署的資料庫沒有任何 user，websocket auth 找不到人；Discord OAuth 登入
不在這個 service 裡，所以用這個指令建立 user、發幣、查餘額，
以及檢查 crash 公式的 house edge。

範例：
    python admin.py user 123456789 Bierbaron --balance 1000
    python admin.py grant 1 500 --reason admin_grant
    python admin.py balance 1
    python admin.py house-edge --target 2.0 --rounds 100000
"""
import argparse
import random
import sys
from typing import Optional

from core.exceptions import CasinoException
from database import Base, SessionLocal, engine
from services.house_edge_service import analytic_house_edge, analytic_return, simulate_return
from services.ledger_service import adjust_balance, get_balance, lookup_user
from services.user_service import upsert_discord_user

GRANT_REASON = "admin_grant"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bierbaron casino administration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    user = commands.add_parser("user", help="Create or update a user by Discord id")
    user.add_argument("discord_id", help="Discord account id")
    user.add_argument("discord_name", help="Display name shown at the crash table")
    user.add_argument("--avatar-url", help="Avatar URL")
    user.add_argument("--balance", type=int, default=0,
                      help="Bierkästen to grant right away")

    grant = commands.add_parser("grant", help="Add (or with a negative amount remove) Bierkästen")
    grant.add_argument("user_id", type=int)
    grant.add_argument("amount", type=int)
    grant.add_argument("--reason", default=GRANT_REASON, help="Transaction reason tag")

    balance = commands.add_parser("balance", help="Show a user's balance")
    balance.add_argument("user_id", type=int)

    edge = commands.add_parser("house-edge", help="Analytic vs simulated return of a cashout target")
    edge.add_argument("--target", type=float, default=2.0, help="Cashout target multiplier")
    edge.add_argument("--rounds", type=int, default=100000, help="Simulated rounds")
    edge.add_argument("--seed", type=int, help="Random seed for a reproducible simulation")

    return parser


def run_user(db, args) -> int:
    user = upsert_discord_user(db, args.discord_id, args.discord_name, args.avatar_url)
    if args.balance:
        adjust_balance(db, user.id, args.balance, GRANT_REASON)
    print(f"User {user.id} ({user.discord_name}): {get_balance(db, user.id)} Bierkästen")
    return 0


def run_grant(db, args) -> int:
    if lookup_user(db, args.user_id) is None:
        print(f"User {args.user_id} not found", file=sys.stderr)
        return 1
    new_balance = adjust_balance(db, args.user_id, args.amount, args.reason)
    print(f"User {args.user_id}: {new_balance} Bierkästen")
    return 0


def run_balance(db, args) -> int:
    user = lookup_user(db, args.user_id)
    if user is None:
        print(f"User {args.user_id} not found", file=sys.stderr)
        return 1
    print(f"User {user.id} ({user.display_name}): {get_balance(db, user.id)} Bierkästen")
    return 0


def run_house_edge(args) -> int:
    rng = random.Random(args.seed)
    expected = analytic_return(args.target)
    simulated = simulate_return(args.target, args.rounds, rng)
    print(f"Target {args.target}x")
    print(f"  analytic return:  {expected:.5f}")
    print(f"  house edge:       {analytic_house_edge(args.target):.5%}")
    print(f"  simulated return: {simulated:.5f} over {args.rounds} rounds")
    return 0


def main(argv: Optional[list[str]] = None, session_factory=None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "house-edge":
        try:
            return run_house_edge(args)
        except ValueError as e:
            print(str(e), file=sys.stderr)
            return 2

    if session_factory is None:
        Base.metadata.create_all(bind=engine)
        session_factory = SessionLocal

    handlers = {"user": run_user, "grant": run_grant, "balance": run_balance}
    db = session_factory()
    try:
        return handlers[args.command](db, args)
    except CasinoException as e:
        print(str(e), file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
