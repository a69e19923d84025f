from __future__ import annotations

from common.identity import Signer
from common.policy import AllowAllPolicy, AllowlistPolicy, parse_allowed_requesters


def test_parse_json_and_csv_forms():
    a = Signer.generate().identity
    b = Signer.generate().identity

    from_json = parse_allowed_requesters(f'["{a}", "{b.upper().replace("0X", "0x")}"]')
    from_csv = parse_allowed_requesters(f"{a},\n '{b[2:]}'")

    assert from_json == {a, b}
    assert from_csv == {a, b}


def test_parse_empty_or_invalid_input():
    assert parse_allowed_requesters(None) == frozenset()
    assert parse_allowed_requesters("") == frozenset()
    assert parse_allowed_requesters("[1, 2, true]") == frozenset()


def test_allowlist_allows_members_and_denies_others():
    alice = Signer.generate().identity
    mallory = Signer.generate().identity
    policy = AllowlistPolicy.from_raw(alice)

    assert policy.evaluate("1", alice).allowed
    decision = policy.evaluate("1", mallory)
    assert not decision.allowed
    assert mallory in (decision.reason or "")


def test_empty_allowlist_is_open():
    policy = AllowlistPolicy([])

    assert policy.is_open
    assert policy.evaluate("7", Signer.generate().identity).allowed


def test_allow_all_policy():
    decision = AllowAllPolicy().evaluate("1", "anyone")
    assert decision.allowed
    assert decision.reason
