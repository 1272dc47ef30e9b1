import pytest

from integrity_comparators import (
    RELAY_NAMESPACE,
    AtRiskLoginFailureComparator,
    FlaggedAccounts,
    KnownAddressComparator,
    MonitoredAccountComparator,
    RelayForwardComparator,
    load_static_list,
)
from state_store import MemoryStateStore, StateStoreUnavailable


def test_load_static_list_skips_comments(tmp_path) -> None:
    path = tmp_path / "addresses.txt"
    path.write_text("# known addresses\n10.0.0.1\n\n  10.0.0.2  \n")

    assert load_static_list(str(path)) == frozenset({"10.0.0.1", "10.0.0.2"})


def test_load_static_list_missing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_static_list(str(tmp_path / "missing.txt"))


def test_relay_forward_mismatch(make_event) -> None:
    state = MemoryStateStore()
    comparator = RelayForwardComparator(state, "customs")

    expected = make_event(0, action="relay_expected_hash", uid="u1", message_id="m1", real_address_hash="aaa")
    actual = make_event(1, action="relay_forward", message_id="m1", real_address_hash="bbb")

    assert comparator.evaluate("m1", expected) is None
    alert = comparator.evaluate("m1", actual)

    assert alert.summary == "customs private relay address hash mismatch for u1"
    assert alert.severity == "high"
    assert alert.get_metadata("message_id") == "m1"
    assert alert.get_metadata("real_address_hash_expected") == "aaa"
    assert alert.get_metadata("real_address_hash_actual") == "bbb"
    assert state.get(RELAY_NAMESPACE, "m1")["resolved"] is True

    # resolved messages never alert again
    assert comparator.evaluate("m1", actual) is None


def test_relay_forward_match_in_either_order(make_event) -> None:
    comparator = RelayForwardComparator(MemoryStateStore(), "customs")
    actual = make_event(0, action="relay_forward", message_id="m2", real_address_hash="same")
    expected = make_event(1, action="relay_expected_hash", message_id="m2", real_address_hash="same")

    assert comparator.evaluate("m2", actual) is None
    assert comparator.evaluate("m2", expected) is None


def test_relay_forward_ignores_other_actions(make_event) -> None:
    comparator = RelayForwardComparator(MemoryStateStore(), "customs")

    assert comparator.evaluate("m3", make_event(0, action="login_success", real_address_hash="x")) is None


def test_known_address_status_check(make_event) -> None:
    comparator = KnownAddressComparator(frozenset({"10.0.0.1"}), "customs")
    hit = make_event(0, action="account_status_check", source_address="10.0.0.1", email="a@example.com")

    alert = comparator.evaluate(None, hit)

    assert alert.summary == "customs status check comparator indicates known address"
    assert alert.get_metadata("email") == "a@example.com"
    assert comparator.evaluate(None, hit._replace(source_address="10.0.0.2")) is None
    assert comparator.evaluate(None, hit._replace(action="login_success")) is None


def test_monitored_account_activity(make_event) -> None:
    comparator = MonitoredAccountComparator(frozenset({"watched@example.com"}), "customs")

    alert = comparator.evaluate(None, make_event(0, action="login_success", email="watched@example.com"))

    assert alert.summary == "customs activity on monitored account - action login_success"
    assert alert.get_metadata("action") == "login_success"
    assert comparator.evaluate(None, make_event(0, email="other@example.com")) is None


def test_at_risk_login_failure_uses_current_snapshot(make_event) -> None:
    flagged = FlaggedAccounts()
    comparator = AtRiskLoginFailureComparator(flagged, "customs")
    failure = make_event(0, action="login_failure", uid="u1", source_address="10.0.0.9")

    assert comparator.evaluate(None, failure) is None

    flagged.add("u1")
    alert = comparator.evaluate(None, failure)
    assert alert.summary == "customs login failure for at risk account, 10.0.0.9"

    flagged.replace([])
    assert comparator.evaluate(None, failure) is None


def test_flagged_accounts_snapshot_is_immutable() -> None:
    flagged = FlaggedAccounts(["a"])
    before = flagged.snapshot()
    flagged.add("b")

    assert before == frozenset({"a"})
    assert "b" in flagged


def test_relay_forward_unavailable_store_propagates(unavailable_store, make_event) -> None:
    comparator = RelayForwardComparator(unavailable_store, "customs")
    expected = make_event(0, action="relay_expected_hash", message_id="m1", real_address_hash="aaa")

    with pytest.raises(StateStoreUnavailable):
        comparator.evaluate("m1", expected)
