import pytest

from fakes import (
    OTHER_TOKEN,
    STBTC_TOKEN,
    THRESHOLD,
    USER_ABC,
    USER_DEF,
    FakeChain,
    deposit_event,
    linear_timestamps,
    stake_event,
    swap_event,
)
from task_tracker import (
    DecodeError,
    EventKind,
    RawEvent,
    StakeEvent,
    StoreError,
    TransportError,
    decode_event,
)


@pytest.fixture
def chain():
    return FakeChain(linear_timestamps(50))


def test_stake_at_threshold_credits_once_and_notifies_once(chain, make_pipeline, ledger, notifier):
    chain.add(stake_event(10, USER_ABC, THRESHOLD))
    pipeline = make_pipeline(chain)

    assert pipeline.process(5, 15) == 1
    assert [(r["user_addr"], r["task_id"]) for r in ledger.list_credits()] == [(USER_ABC, 1)]
    assert [p.to_json() for p in notifier.sent] == [
        {"taskId": 1, "timestamp": 1_700_000_000, "address": USER_ABC}
    ]

    assert pipeline.process(5, 15) == 0
    assert len(ledger.list_credits()) == 1
    assert len(notifier.sent) == 1


def test_values_one_below_threshold_do_not_qualify(chain, make_pipeline, ledger, notifier):
    chain.add(
        stake_event(1, USER_ABC, THRESHOLD - 1),
        swap_event(2, USER_ABC, -(THRESHOLD - 1)),
        deposit_event(3, USER_ABC, STBTC_TOKEN, THRESHOLD - 1),
    )
    assert make_pipeline(chain).process(1, 3) == 0
    assert ledger.list_credits() == []
    assert notifier.sent == []


def test_each_event_kind_credits_its_own_task(chain, make_pipeline, ledger):
    chain.add(
        stake_event(1, USER_ABC, THRESHOLD),
        swap_event(2, USER_DEF, -THRESHOLD, recipient=USER_ABC),
        deposit_event(3, USER_ABC, STBTC_TOKEN, THRESHOLD),
    )
    assert make_pipeline(chain).process(1, 3) == 3
    assert ledger.has_credit(USER_ABC, 1)
    assert ledger.has_credit(USER_DEF, 2)
    assert not ledger.has_credit(USER_ABC, 2)
    assert ledger.has_credit(USER_ABC, 3)


def test_swap_into_the_pool_does_not_qualify(chain, make_pipeline, ledger):
    chain.add(swap_event(4, USER_ABC, THRESHOLD * 10))
    assert make_pipeline(chain).process(1, 10) == 0
    assert ledger.list_credits() == []


def test_deposit_of_untracked_token_does_not_qualify(chain, make_pipeline, ledger):
    chain.add(deposit_event(4, USER_ABC, OTHER_TOKEN, THRESHOLD * 10))
    assert make_pipeline(chain).process(1, 10) == 0


def test_deposit_token_match_ignores_address_case(chain, make_pipeline, ledger):
    chain.add(deposit_event(4, USER_ABC, STBTC_TOKEN.lower(), THRESHOLD))
    assert make_pipeline(chain).process(1, 10) == 1


def test_kinds_are_fetched_in_fixed_order(chain, make_pipeline):
    make_pipeline(chain).process(20, 29)
    assert chain.get_logs_calls == [
        ("StakeBTC2JoinStakePlan", 20, 29),
        ("Swap", 20, 29),
        ("Deposit", 20, 29),
    ]


def test_malformed_log_is_skipped_without_aborting_batch(chain, make_pipeline, ledger, capsys):
    broken = RawEvent(
        contract_address=stake_event(1, USER_DEF, 0).contract_address,
        event_name="StakeBTC2JoinStakePlan",
        block_height=1,
        log_index=0,
        args={"user": USER_DEF},
    )
    chain.add(broken, stake_event(2, USER_ABC, THRESHOLD))

    assert make_pipeline(chain).process(1, 5) == 1
    assert ledger.has_credit(USER_ABC, 1)
    assert "block 1 index 0" in capsys.readouterr().err


def test_failed_notification_keeps_the_credit(chain, make_pipeline, ledger, notifier):
    notifier.result = False
    chain.add(stake_event(3, USER_ABC, THRESHOLD))
    pipeline = make_pipeline(chain)

    assert pipeline.process(1, 5) == 1
    assert ledger.has_credit(USER_ABC, 1)
    assert len(notifier.sent) == 1

    notifier.result = True
    assert pipeline.process(1, 5) == 0
    assert len(notifier.sent) == 1


def test_duplicate_events_in_one_batch_credit_once(chain, make_pipeline, ledger, notifier):
    chain.add(stake_event(3, USER_ABC, THRESHOLD), stake_event(3, USER_ABC, THRESHOLD * 2, log_index=4))
    assert make_pipeline(chain).process(1, 5) == 1
    assert len(notifier.sent) == 1


def test_reprocessing_a_range_is_idempotent(chain, make_pipeline, ledger, notifier):
    chain.add(
        stake_event(1, USER_ABC, THRESHOLD),
        stake_event(2, USER_DEF, THRESHOLD * 3),
        swap_event(7, USER_DEF, -THRESHOLD),
        deposit_event(9, USER_DEF, STBTC_TOKEN, THRESHOLD),
    )
    pipeline = make_pipeline(chain)
    pipeline.process(1, 10)
    credits_after_first = ledger.list_credits()
    sent_after_first = list(notifier.sent)

    assert pipeline.process(1, 10) == 0
    assert ledger.list_credits() == credits_after_first
    assert notifier.sent == sent_after_first


def test_transport_error_propagates(chain, make_pipeline):
    chain.fail_get_logs = TransportError("rpc down")
    with pytest.raises(TransportError):
        make_pipeline(chain).process(1, 10)


def test_ledger_failure_propagates(chain, make_pipeline, ledger, notifier):
    chain.add(stake_event(3, USER_ABC, THRESHOLD))
    ledger.conn.execute("DROP TABLE user_tasks")
    with pytest.raises(StoreError):
        make_pipeline(chain).process(1, 5)
    assert notifier.sent == []


def test_decode_event_builds_named_fields():
    event = decode_event(EventKind.STAKE, stake_event(3, USER_ABC, 42))
    assert isinstance(event, StakeEvent)
    assert event.kind is EventKind.STAKE
    assert event.user == USER_ABC
    assert event.st_btc_amount == 42
    assert event.stake_index == 7


@pytest.mark.parametrize(
    "field, value",
    [
        ("stBTCAmount", "1000"),
        ("stBTCAmount", True),
        ("stBTCAmount", -1),
        ("user", "not-an-address"),
        ("user", None),
    ],
)
def test_decode_event_rejects_bad_shapes(field, value):
    raw = stake_event(3, USER_ABC, 42)
    args = dict(raw.args)
    args[field] = value
    bad = RawEvent(raw.contract_address, raw.event_name, raw.block_height, raw.log_index, args)
    with pytest.raises(DecodeError):
        decode_event(EventKind.STAKE, bad)


def test_address_case_variants_share_one_credit(chain, make_pipeline, ledger, notifier):
    chain.add(stake_event(1, USER_DEF, THRESHOLD), stake_event(2, USER_DEF.lower(), THRESHOLD))

    assert make_pipeline(chain).process(1, 5) == 1
    assert [(r["user_addr"], r["task_id"]) for r in ledger.list_credits()] == [(USER_DEF, 1)]
    assert [p.address for p in notifier.sent] == [USER_DEF]


def test_decode_event_checksums_addresses():
    event = decode_event(EventKind.STAKE, stake_event(3, USER_ABC.lower(), 42))
    assert event.user == USER_ABC
