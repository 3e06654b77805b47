import pytest

import admin
from models import WalletTransaction


def run(session_factory, *argv):
    return admin.main(list(argv), session_factory=session_factory)


def test_user_command_creates_user_with_starting_balance(session_factory, capsys):
    assert run(session_factory, "user", "123456789", "Bierbaron", "--balance", "1000") == 0
    assert capsys.readouterr().out.strip() == "User 1 (Bierbaron): 1000 Bierkästen"

    # 同一個 Discord id 再跑一次只更新名稱，不會多一個 user
    assert run(session_factory, "user", "123456789", "Bierkönig") == 0
    assert capsys.readouterr().out.strip() == "User 1 (Bierkönig): 1000 Bierkästen"


def test_seeded_user_can_authenticate_and_bet(session_factory, ledger, capsys):
    run(session_factory, "user", "42", "alice", "--balance", "500")
    capsys.readouterr()

    identity = ledger.lookup_user(1)
    assert identity.display_name == "alice"
    assert ledger.debit_bet(1, 100) == 400


def test_grant_and_balance(session_factory, make_user, capsys):
    user_id = make_user("alice", 100)

    assert run(session_factory, "grant", str(user_id), "250") == 0
    assert capsys.readouterr().out.strip() == f"User {user_id}: 350 Bierkästen"

    assert run(session_factory, "grant", str(user_id), "-50", "--reason", "admin_revoke") == 0
    assert run(session_factory, "balance", str(user_id)) == 0
    assert capsys.readouterr().out.strip().splitlines()[-1] == f"User {user_id} (alice): 300 Bierkästen"

    session = session_factory()
    try:
        reasons = [tx.reason for tx in session.query(WalletTransaction).order_by(WalletTransaction.id)]
    finally:
        session.close()
    assert reasons == ["admin_grant", "admin_revoke"]


def test_grant_cannot_overdraw(session_factory, make_user, balance_of, capsys):
    user_id = make_user("alice", 100)

    assert run(session_factory, "grant", str(user_id), "-101") == 1
    assert "cannot debit 101" in capsys.readouterr().err
    assert balance_of(user_id) == 100


@pytest.mark.parametrize("command", ["grant", "balance"])
def test_unknown_user(session_factory, capsys, command):
    argv = [command, "404"] + (["10"] if command == "grant" else [])
    assert run(session_factory, *argv) == 1
    assert "User 404 not found" in capsys.readouterr().err


def test_house_edge_report(capsys):
    assert admin.main(["house-edge", "--target", "2.0", "--rounds", "2000", "--seed", "7"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("Target 2.0x")
    assert "analytic return:" in out
    assert "over 2000 rounds" in out


def test_house_edge_rejects_impossible_target(capsys):
    assert admin.main(["house-edge", "--target", "1.0"]) == 2
    assert "Cashout target" in capsys.readouterr().err
