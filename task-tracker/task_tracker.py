#!/usr/bin/env python3
"""Campaign task tracker: credits on-chain activity inside a time window.

Usage:
  python task_tracker.py --config config.json run
  python task_tracker.py --config config.json process --from-block 100 --to-block 199
  python task_tracker.py --config config.json resolve --timestamp 1718000000
  python task_tracker.py --config config.json status
  python task_tracker.py --config config.json credits --task 1
  python task_tracker.py --config config.json credits --task 1 --address 0xabc...

Notes:
- Three event shapes are tracked (stake, swap, deposit), each mapped to one task id.
  A user is credited at most once per task; the ledger's unique key is the only
  de-duplication mechanism, so re-scanning a range is always safe.
- Block timestamps are assumed to be non-decreasing in height. The resolver checks the
  blocks it probed and falls back to a short linear scan when that does not hold.
- Credits and notifications are not transactional. A credit may be recorded while its
  notification fails; the failure is logged and never retried.
"""

import argparse
import asyncio
import enum
import json
import os
import sqlite3
import sys
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, List, Mapping, Optional, Tuple, Union

import requests
from hexbytes import HexBytes
from web3 import Web3
from web3._utils.events import get_event_data, event_abi_to_log_topic
from web3.exceptions import BlockNotFound, Web3Exception


DEFAULT_API_URL = "https://dapp-server.bnbchain.world/api/v1/4ya/upload-user"
DEFAULT_CHECKPOINT_FILE = "last_processed_block.txt"
DEFAULT_THRESHOLD = 200_000_000_000_000  # 0.0002 ether in wei
BATCH_SIZE = 100
POLL_INTERVAL = 10
NOTIFY_TIMEOUT = 10
SCAN_BRACKET = 32

# Provider error fragments meaning "range too large", not "provider down".
_RANGE_LIMIT_MARKERS = ("query returned more than", "too many", "limit exceeded")
_TRANSPORT_ERRORS = (Web3Exception, ValueError, OSError)


def _log(msg: str) -> None:
    ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())
    sys.stderr.write(f"[{ts} UTC] {msg}\n")
    sys.stderr.flush()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, HexBytes):
        return obj.hex()
    if isinstance(obj, (bytes, bytearray)):
        return "0x" + obj.hex()
    return str(obj)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True)


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _to_checksum(addr: str) -> str:
    return Web3.to_checksum_address(addr)


def _parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"not an integer: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.startswith("0x"):
            return int(value, 16)
        return int(value)
    return int(value)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TrackerError(Exception):
    pass


class ConfigError(TrackerError):
    pass


class TransportError(TrackerError):
    pass


class NotFoundError(TrackerError):
    pass


class PersistenceError(TrackerError):
    pass


class StoreError(TrackerError):
    pass


class NotificationError(TrackerError):
    pass


class DecodeError(TrackerError):
    pass


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventKind(enum.Enum):
    STAKE = "stake"
    SWAP = "swap"
    DEPOSIT = "deposit"


def _event_abi(name: str, inputs: List[Tuple[str, str, bool]]) -> Dict[str, Any]:
    return {
        "anonymous": False,
        "name": name,
        "type": "event",
        "inputs": [
            {"indexed": indexed, "internalType": typ, "name": arg, "type": typ}
            for arg, typ, indexed in inputs
        ],
    }


STAKE_EVENT_ABI = _event_abi(
    "StakeBTC2JoinStakePlan",
    [
        ("stakeIndex", "uint256", True),
        ("planId", "uint256", True),
        ("user", "address", True),
        ("btcContractAddress", "address", False),
        ("stakeAmount", "uint256", False),
        ("stBTCAmount", "uint256", False),
    ],
)

SWAP_EVENT_ABI = _event_abi(
    "Swap",
    [
        ("sender", "address", True),
        ("recipient", "address", True),
        ("amount0", "int256", False),
        ("amount1", "int256", False),
        ("sqrtPriceX96", "uint160", False),
        ("liquidity", "uint128", False),
        ("tick", "int24", False),
        ("protocolFeesToken0", "uint128", False),
        ("protocolFeesToken1", "uint128", False),
    ],
)

DEPOSIT_EVENT_ABI = _event_abi(
    "Deposit",
    [
        ("staker", "address", False),
        ("token", "address", False),
        ("strategy", "address", False),
        ("shares", "uint256", False),
    ],
)

# Processing order within a batch is fixed.
EVENT_ORDER = (EventKind.STAKE, EventKind.SWAP, EventKind.DEPOSIT)
EVENT_ABIS = {
    EventKind.STAKE: STAKE_EVENT_ABI,
    EventKind.SWAP: SWAP_EVENT_ABI,
    EventKind.DEPOSIT: DEPOSIT_EVENT_ABI,
}
TASK_IDS = {EventKind.STAKE: 1, EventKind.SWAP: 2, EventKind.DEPOSIT: 3}


@dataclass(frozen=True)
class RawEvent:
    contract_address: str
    event_name: str
    block_height: int
    log_index: int
    args: Dict[str, Any]
    transaction_hash: Optional[str] = None


@dataclass(frozen=True)
class StakeEvent:
    kind: ClassVar[EventKind] = EventKind.STAKE
    stake_index: int
    plan_id: int
    user: str
    btc_contract: str
    stake_amount: int
    st_btc_amount: int


@dataclass(frozen=True)
class SwapEvent:
    kind: ClassVar[EventKind] = EventKind.SWAP
    sender: str
    recipient: str
    amount0: int
    amount1: int
    sqrt_price_x96: int
    liquidity: int
    tick: int


@dataclass(frozen=True)
class DepositEvent:
    kind: ClassVar[EventKind] = EventKind.DEPOSIT
    staker: str
    token: str
    strategy: str
    shares: int


DecodedEvent = Union[StakeEvent, SwapEvent, DepositEvent]

# (field, log arg name, arg type) per variant.
_EVENT_FIELDS: Dict[EventKind, Tuple[type, List[Tuple[str, str, str]]]] = {
    EventKind.STAKE: (
        StakeEvent,
        [
            ("stake_index", "stakeIndex", "uint"),
            ("plan_id", "planId", "uint"),
            ("user", "user", "address"),
            ("btc_contract", "btcContractAddress", "address"),
            ("stake_amount", "stakeAmount", "uint"),
            ("st_btc_amount", "stBTCAmount", "uint"),
        ],
    ),
    EventKind.SWAP: (
        SwapEvent,
        [
            ("sender", "sender", "address"),
            ("recipient", "recipient", "address"),
            ("amount0", "amount0", "int"),
            ("amount1", "amount1", "int"),
            ("sqrt_price_x96", "sqrtPriceX96", "uint"),
            ("liquidity", "liquidity", "uint"),
            ("tick", "tick", "int"),
        ],
    ),
    EventKind.DEPOSIT: (
        DepositEvent,
        [
            ("staker", "staker", "address"),
            ("token", "token", "address"),
            ("strategy", "strategy", "address"),
            ("shares", "shares", "uint"),
        ],
    ),
}

_CREDITED_FIELD = {EventKind.STAKE: "user", EventKind.SWAP: "sender", EventKind.DEPOSIT: "staker"}


def _coerce_arg(name: str, value: Any, arg_type: str) -> Any:
    if arg_type == "address":
        if not isinstance(value, str) or not Web3.is_address(value):
            raise DecodeError(f"{name} is not an address: {value!r}")
        return _to_checksum(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"{name} is not an integer: {value!r}")
    if arg_type == "uint" and value < 0:
        raise DecodeError(f"{name} is negative: {value}")
    return value


def decode_event(kind: EventKind, raw: RawEvent) -> DecodedEvent:
    cls, fields = _EVENT_FIELDS[kind]
    args = raw.args or {}
    values = {}
    for field, arg_name, arg_type in fields:
        if arg_name not in args:
            raise DecodeError(f"{raw.event_name or kind.value} log has no '{arg_name}' argument")
        values[field] = _coerce_arg(arg_name, args[arg_name], arg_type)
    return cls(**values)


def credited_address(event: DecodedEvent) -> str:
    return getattr(event, _CREDITED_FIELD[event.kind])


def is_eligible(event: DecodedEvent, threshold: int, tracked_token: str) -> bool:
    if event.kind is EventKind.STAKE:
        return event.st_btc_amount >= threshold
    if event.kind is EventKind.SWAP:
        return event.amount1 < 0 and -event.amount1 >= threshold
    if event.kind is EventKind.DEPOSIT:
        return event.token.lower() == tracked_token.lower() and event.shares >= threshold
    raise ValueError(f"unknown event kind {event.kind!r}")


def _describe(event: DecodedEvent) -> str:
    _cls, fields = _EVENT_FIELDS[event.kind]
    return ", ".join(f"{arg_name}: {getattr(event, field)}" for field, arg_name, _typ in fields)


@dataclass(frozen=True)
class NotificationPayload:
    task_id: int
    timestamp: int
    address: str

    def to_json(self) -> Dict[str, Any]:
        return {"taskId": self.task_id, "timestamp": self.timestamp, "address": self.address}


# ---------------------------------------------------------------------------
# Chain access
# ---------------------------------------------------------------------------


class ChainClient:
    """Read-only view of the chain over a web3 HTTP provider.

    No call is retried here; the scheduler retries a whole cycle instead.
    """

    def __init__(self, rpc_http: Optional[str] = None, w3: Optional[Any] = None):
        if w3 is None:
            if not rpc_http:
                raise ConfigError("rpc_http is required")
            w3 = Web3(Web3.HTTPProvider(rpc_http))
        self.w3 = w3
        self._block_ts_cache: Dict[int, int] = {}

    def current_height(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except _TRANSPORT_ERRORS as exc:
            raise TransportError(f"eth_blockNumber failed: {exc}") from exc

    def block_timestamp(self, height: int) -> int:
        if height in self._block_ts_cache:
            return self._block_ts_cache[height]
        try:
            block = self.w3.eth.get_block(height)
        except BlockNotFound as exc:
            raise NotFoundError(f"block {height} not found") from exc
        except _TRANSPORT_ERRORS as exc:
            raise TransportError(f"eth_getBlockByNumber({height}) failed: {exc}") from exc
        if block is None:
            raise NotFoundError(f"block {height} not found")
        ts = int(block["timestamp"])
        self._block_ts_cache[height] = ts
        return ts

    def get_logs(
        self, contract_address: str, event_abi: Dict[str, Any], from_block: int, to_block: int
    ) -> List[RawEvent]:
        topic = Web3.to_hex(event_abi_to_log_topic(event_abi))
        logs = self._fetch_logs(contract_address, topic, from_block, to_block)
        logs = sorted(logs, key=lambda x: (x.get("blockNumber", 0), x.get("logIndex", 0)))
        return [self._to_raw_event(contract_address, event_abi, log) for log in logs]

    def _fetch_logs(self, address: str, topic: str, from_block: int, to_block: int) -> List[Any]:
        try:
            return list(
                self.w3.eth.get_logs(
                    {
                        "fromBlock": from_block,
                        "toBlock": to_block,
                        "address": address,
                        "topics": [topic],
                    }
                )
            )
        except _TRANSPORT_ERRORS as exc:
            msg = str(exc).lower()
            if from_block < to_block and any(marker in msg for marker in _RANGE_LIMIT_MARKERS):
                mid = (from_block + to_block) // 2
                _log(f"WARN: get_logs too large ({from_block}-{to_block}) for {address}, splitting at {mid}")
                return self._fetch_logs(address, topic, from_block, mid) + self._fetch_logs(
                    address, topic, mid + 1, to_block
                )
            raise TransportError(
                f"eth_getLogs failed for {address} blocks {from_block}-{to_block}: {exc}"
            ) from exc

    def _to_raw_event(self, address: str, event_abi: Dict[str, Any], log: Any) -> RawEvent:
        block_number = _parse_int(log.get("blockNumber", 0))
        log_index = _parse_int(log.get("logIndex", 0))
        tx_hash = log.get("transactionHash")
        args: Dict[str, Any] = {}
        try:
            event_data = get_event_data(self.w3.codec, event_abi, log)
            args = dict(event_data.get("args", {}))
        except Exception as exc:
            _log(
                f"WARN: Failed decoding {event_abi['name']} log for {address} "
                f"at block {block_number} index {log_index}: {exc}"
            )
        return RawEvent(
            contract_address=address,
            event_name=event_abi["name"],
            block_height=block_number,
            log_index=log_index,
            args=args,
            transaction_hash=Web3.to_hex(tx_hash) if tx_hash is not None else None,
        )


class BlockTimeResolver:
    """Maps a wall-clock timestamp to the first block at or after it.

    Binary search assumes block timestamps never decrease with height. Every probe
    is kept; if the probes contradict that assumption the answer is re-derived by a
    linear scan over the `scan_bracket` blocks below the binary-search candidate.
    """

    def __init__(self, chain: ChainClient, scan_bracket: int = SCAN_BRACKET):
        self.chain = chain
        self.scan_bracket = scan_bracket

    def resolve(self, lower_bound: int, target_timestamp: int, upper_bound: Optional[int] = None) -> int:
        if upper_bound is None:
            upper_bound = self.chain.current_height()
        if lower_bound > upper_bound:
            return lower_bound

        probes: Dict[int, int] = {}

        def ts_at(height: int) -> int:
            if height not in probes:
                probes[height] = self.chain.block_timestamp(height)
            return probes[height]

        if ts_at(lower_bound) >= target_timestamp:
            return lower_bound
        if ts_at(upper_bound) < target_timestamp:
            # not reached yet
            return upper_bound + 1

        lo, hi = lower_bound + 1, upper_bound
        while lo < hi:
            mid = (lo + hi) // 2
            if ts_at(mid) < target_timestamp:
                lo = mid + 1
            else:
                hi = mid

        ts_at(lo - 1)
        if self._is_monotonic(probes):
            return lo
        _log(
            f"WARN: block timestamps are not monotonic between {lower_bound} and {upper_bound}; "
            f"scanning {self.scan_bracket} blocks below {lo}"
        )
        return self._linear_scan(max(lower_bound, lo - self.scan_bracket), lo, target_timestamp)

    @staticmethod
    def _is_monotonic(probes: Dict[int, int]) -> bool:
        ordered = [probes[h] for h in sorted(probes)]
        return all(a <= b for a, b in zip(ordered, ordered[1:]))

    def _linear_scan(self, start: int, end: int, target_timestamp: int) -> int:
        for height in range(start, end + 1):
            if self.chain.block_timestamp(height) >= target_timestamp:
                return height
        return end


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def _fsync_dir(directory: str) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class CheckpointStore:
    """Last fully processed block height, kept as a text integer in one file."""

    def __init__(self, path: str = DEFAULT_CHECKPOINT_FILE):
        self.path = path

    def load(self) -> int:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                text = f.read().strip()
        except FileNotFoundError:
            return 0
        except OSError as exc:
            raise PersistenceError(f"cannot read checkpoint {self.path}: {exc}") from exc
        if not text:
            return 0
        try:
            height = int(text, 10)
        except ValueError as exc:
            raise PersistenceError(f"corrupt checkpoint {self.path}: {text!r}") from exc
        if height < 0:
            raise PersistenceError(f"corrupt checkpoint {self.path}: {text!r}")
        return height

    def save(self, height: int) -> None:
        if height < 0:
            raise PersistenceError(f"invalid checkpoint height {height}")
        current = self.load()
        if height < current:
            raise PersistenceError(f"refusing to move checkpoint back from {current} to {height}")

        directory = os.path.dirname(os.path.abspath(self.path)) or "."
        try:
            fd, tmp = tempfile.mkstemp(prefix=".checkpoint_", dir=directory, text=True)
        except OSError as exc:
            raise PersistenceError(f"cannot write checkpoint {self.path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(str(height))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
            _fsync_dir(directory)
        except OSError as exc:
            try:
                os.remove(tmp)
            except OSError:
                pass
            raise PersistenceError(f"cannot write checkpoint {self.path}: {exc}") from exc


class CreditLedger:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    def init_db(self) -> None:
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            cur = self.conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS user_tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_addr TEXT NOT NULL,
                    task_id INTEGER NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(user_addr, task_id)
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_user_tasks_task ON user_tasks(task_id)")
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open ledger {self.db_path}: {exc}") from exc

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StoreError("ledger not initialized")
        return self.conn

    def insert_if_absent(self, user_addr: str, task_id: int) -> bool:
        """Returns True when the record is new, False when it already existed."""
        conn = self._require_conn()
        try:
            cur = conn.execute(
                "INSERT OR IGNORE INTO user_tasks (user_addr, task_id) VALUES (?, ?)",
                (user_addr, task_id),
            )
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(f"insert ({user_addr}, task {task_id}) failed: {exc}") from exc
        return cur.rowcount == 1

    def has_credit(self, user_addr: str, task_id: int) -> bool:
        conn = self._require_conn()
        try:
            row = conn.execute(
                "SELECT 1 FROM user_tasks WHERE user_addr = ? AND task_id = ?", (user_addr, task_id)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"lookup ({user_addr}, task {task_id}) failed: {exc}") from exc
        return row is not None

    def list_credits(self, task_id: Optional[int] = None) -> List[Dict[str, Any]]:
        conn = self._require_conn()
        sql = "SELECT user_addr, task_id, created_at FROM user_tasks"
        params: List[Any] = []
        if task_id is not None:
            sql += " WHERE task_id = ?"
            params.append(task_id)
        sql += " ORDER BY id ASC"
        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"listing credits failed: {exc}") from exc
        return [
            {"user_addr": row["user_addr"], "task_id": row["task_id"], "created_at": row["created_at"]}
            for row in rows
        ]

    def count_by_task(self) -> Dict[int, int]:
        conn = self._require_conn()
        try:
            rows = conn.execute(
                "SELECT task_id, COUNT(*) AS n FROM user_tasks GROUP BY task_id ORDER BY task_id"
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"counting credits failed: {exc}") from exc
        return {row["task_id"]: row["n"] for row in rows}


# ---------------------------------------------------------------------------
# Notification
# ---------------------------------------------------------------------------


class Notifier:
    """Single-shot HTTP forwarder. Failures are logged and reported, never retried."""

    def __init__(self, api_url: str, api_token: str, timeout: int = NOTIFY_TIMEOUT):
        self.api_url = api_url
        self.api_token = api_token
        self.timeout = timeout

    def notify(self, payload: NotificationPayload) -> bool:
        try:
            self._post(payload)
        except NotificationError as exc:
            _log(
                f"ERROR: notification for task {payload.task_id} address {payload.address} "
                f"not delivered: {exc}"
            )
            return False
        return True

    def _post(self, payload: NotificationPayload) -> None:
        body = {"token": self.api_token, "data": [payload.to_json()]}
        try:
            response = requests.post(
                self.api_url,
                json=body,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NotificationError(str(exc)) from exc
        _log(f"API Response ({response.status_code}): {response.text}")
        if not 200 <= response.status_code < 300:
            raise NotificationError(f"HTTP {response.status_code}")


# ---------------------------------------------------------------------------
# Pipeline + scheduler
# ---------------------------------------------------------------------------


class EventPipeline:
    def __init__(
        self,
        chain: ChainClient,
        ledger: CreditLedger,
        notifier: Notifier,
        contracts: Mapping[EventKind, str],
        tracked_token: str,
        threshold: int = DEFAULT_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        self.chain = chain
        self.ledger = ledger
        self.notifier = notifier
        self.contracts = dict(contracts)
        self.tracked_token = tracked_token
        self.threshold = threshold
        self.clock = clock

    def process(self, from_block: int, to_block: int) -> int:
        _log(f"Processing events from block {from_block} to {to_block}")
        credited = 0
        for kind in EVENT_ORDER:
            raw_events = self.chain.get_logs(self.contracts[kind], EVENT_ABIS[kind], from_block, to_block)
            for raw in raw_events:
                credited += self._handle(kind, raw)
        return credited

    def _handle(self, kind: EventKind, raw: RawEvent) -> int:
        try:
            event = decode_event(kind, raw)
        except DecodeError as exc:
            _log(
                f"WARN: skipping {kind.value} log from {raw.contract_address} "
                f"at block {raw.block_height} index {raw.log_index}: {exc}"
            )
            return 0

        task_id = TASK_IDS[kind]
        address = credited_address(event)
        _log(f"{raw.event_name} detected at block {raw.block_height}: {_describe(event)}")
        if not is_eligible(event, self.threshold, self.tracked_token):
            _log(f"{kind.value} by {address} at block {raw.block_height} does not qualify for task {task_id}")
            return 0

        try:
            inserted = self.ledger.insert_if_absent(address, task_id)
        except StoreError as exc:
            _log(f"ERROR: ledger insert for {address} task {task_id} at block {raw.block_height} failed: {exc}")
            raise
        if not inserted:
            _log(f"user_addr {address} already credited for task {task_id}")
            return 0

        _log(f"user_addr {address} complete task {task_id}")
        self.notifier.notify(NotificationPayload(task_id=task_id, timestamp=int(self.clock()), address=address))
        return 1


@dataclass(frozen=True)
class TimeWindow:
    start_time: int
    end_time: int

    def __post_init__(self) -> None:
        if self.start_time > self.end_time:
            raise ConfigError(f"start_time {self.start_time} is after end_time {self.end_time}")


class SchedulerState(enum.Enum):
    WAITING_FOR_WINDOW_START = "waiting_for_window_start"
    ACTIVE = "active"
    FINISHED = "finished"


class PollingScheduler:
    def __init__(
        self,
        chain: ChainClient,
        checkpoints: CheckpointStore,
        resolver: BlockTimeResolver,
        pipeline: EventPipeline,
        window: TimeWindow,
        batch_size: int = BATCH_SIZE,
        poll_interval: float = POLL_INTERVAL,
    ):
        if not 1 <= batch_size <= BATCH_SIZE:
            raise ConfigError(f"batch_size must be between 1 and {BATCH_SIZE}, got {batch_size}")
        self.chain = chain
        self.checkpoints = checkpoints
        self.resolver = resolver
        self.pipeline = pipeline
        self.window = window
        self.batch_size = batch_size
        self.poll_interval = poll_interval

        self.state = SchedulerState.WAITING_FOR_WINDOW_START
        self.last_processed_block: Optional[int] = None

    async def run(self) -> None:
        self.load_checkpoint()
        _log(f"Starting to process events from block {self.last_processed_block}")
        while True:
            await self.run_cycle()
            if self.state is SchedulerState.FINISHED:
                _log("Track window finished, stopping")
                return
            _log("==================================")
            await asyncio.sleep(self.poll_interval)

    def load_checkpoint(self) -> int:
        self.last_processed_block = self.checkpoints.load()
        return self.last_processed_block

    async def run_cycle(self) -> Optional[Tuple[int, int]]:
        """One polling cycle. Errors end the cycle without touching the checkpoint."""
        try:
            return self.step()
        except TrackerError as exc:
            _log(f"ERROR: cycle failed after block {self.last_processed_block} ({self.state.value}): {exc}")
        except Exception as exc:
            _log(f"ERROR: unexpected failure after block {self.last_processed_block}: {exc!r}")
        return None

    def step(self) -> Optional[Tuple[int, int]]:
        if self.last_processed_block is None:
            self.load_checkpoint()
        if self.state is SchedulerState.FINISHED:
            return None

        latest = self.chain.current_height()
        _log(f"latestBlock: {latest}")
        if self.state is SchedulerState.WAITING_FOR_WINDOW_START:
            self._check_window_start(latest)
        if self.state is SchedulerState.ACTIVE:
            return self._process_next_batch(latest)
        return None

    def _check_window_start(self, latest: int) -> None:
        checkpoint = self.last_processed_block
        checkpoint_ts = self.chain.block_timestamp(checkpoint)
        _log(f"lastProcessedBlock {checkpoint} timestamp: {checkpoint_ts}")

        if checkpoint_ts > self.window.end_time:
            _log(f"Track window already closed at block {checkpoint} (end_time {self.window.end_time})")
            self.state = SchedulerState.FINISHED
            return
        if checkpoint_ts > self.window.start_time:
            self.state = SchedulerState.ACTIVE
            return

        head_ts = self.chain.block_timestamp(latest)
        if head_ts < self.window.start_time:
            _log(f"Start time not reached: {self.window.start_time} (head {latest} at {head_ts})")
            return

        start_block = self.resolver.resolve(checkpoint, self.window.start_time, latest)
        if start_block > checkpoint:
            self.last_processed_block = start_block - 1
        _log(f"Track window opened at block {start_block}, lastProcessedBlock: {self.last_processed_block}")
        self.state = SchedulerState.ACTIVE

    def _process_next_batch(self, latest: int) -> Optional[Tuple[int, int]]:
        if latest <= self.last_processed_block:
            return None
        from_block = self.last_processed_block + 1
        to_block = min(latest, from_block + self.batch_size - 1)

        final = False
        if self.chain.block_timestamp(to_block) > self.window.end_time:
            # last block at or before end_time
            to_block = self.resolver.resolve(from_block, self.window.end_time + 1, to_block) - 1
            final = True
        if from_block > to_block:
            _log(f"Track window ended at block {self.last_processed_block}, nothing left to process")
            self.state = SchedulerState.FINISHED
            return None

        credited = self.pipeline.process(from_block, to_block)
        self.checkpoints.save(to_block)
        self.last_processed_block = to_block
        _log(f"Processed blocks {from_block} to {to_block} ({credited} new credits)")
        if final:
            self.state = SchedulerState.FINISHED
        return from_block, to_block


# ---------------------------------------------------------------------------
# Config + wiring
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TrackerConfig:
    rpc_http: str
    contracts: Dict[EventKind, str]
    tracked_token: str
    api_token: str
    db_path: str
    window: TimeWindow
    api_url: str = DEFAULT_API_URL
    checkpoint_file: str = DEFAULT_CHECKPOINT_FILE
    threshold: int = DEFAULT_THRESHOLD
    batch_size: int = BATCH_SIZE
    poll_interval: float = POLL_INTERVAL
    notify_timeout: int = NOTIFY_TIMEOUT
    scan_bracket: int = SCAN_BRACKET


def _require(cfg: Mapping[str, Any], key: str) -> Any:
    value = cfg.get(key)
    if value is None or value == "":
        raise ConfigError(f"config.{key} is required")
    return value


def _config_address(value: Any, key: str) -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ConfigError(f"config.{key} is not a valid address: {value!r}")
    return _to_checksum(value)


def _config_int(cfg: Mapping[str, Any], key: str, default: Optional[int] = None) -> int:
    value = cfg.get(key, default)
    if value is None:
        raise ConfigError(f"config.{key} is required")
    try:
        return _parse_int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"config.{key} is not an integer: {value!r}") from exc


def _config_float(cfg: Mapping[str, Any], key: str, default: float) -> float:
    value = cfg.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"config.{key} is not a number: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"config.{key} is not a number: {value!r}") from exc
    if number < 0:
        raise ConfigError(f"config.{key} must not be negative: {value!r}")
    return number


def parse_config(cfg: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None) -> TrackerConfig:
    env = os.environ if environ is None else environ
    cfg = dict(cfg)
    if env.get("TRACKER_API_TOKEN"):
        cfg["api_token"] = env["TRACKER_API_TOKEN"]
    if env.get("TRACKER_RPC_HTTP"):
        cfg["rpc_http"] = env["TRACKER_RPC_HTTP"]

    contracts_cfg = cfg.get("contracts")
    if not isinstance(contracts_cfg, dict):
        raise ConfigError("config.contracts is required")
    contracts = {}
    for kind in EVENT_ORDER:
        value = contracts_cfg.get(kind.value)
        if not value:
            raise ConfigError(f"config.contracts.{kind.value} is required")
        contracts[kind] = _config_address(value, f"contracts.{kind.value}")

    window = TimeWindow(_config_int(cfg, "start_time"), _config_int(cfg, "end_time"))
    threshold = _config_int(cfg, "threshold", DEFAULT_THRESHOLD)
    batch_size = _config_int(cfg, "batch_size", BATCH_SIZE)
    if threshold < 0:
        raise ConfigError(f"config.threshold must not be negative: {threshold}")
    if not 1 <= batch_size <= BATCH_SIZE:
        raise ConfigError(f"config.batch_size must be between 1 and {BATCH_SIZE}: {batch_size}")

    return TrackerConfig(
        rpc_http=_require(cfg, "rpc_http"),
        contracts=contracts,
        tracked_token=_config_address(_require(cfg, "tracked_token"), "tracked_token"),
        api_token=_require(cfg, "api_token"),
        db_path=_require(cfg, "db_path"),
        window=window,
        api_url=cfg.get("api_url") or DEFAULT_API_URL,
        checkpoint_file=cfg.get("checkpoint_file") or DEFAULT_CHECKPOINT_FILE,
        threshold=threshold,
        batch_size=batch_size,
        poll_interval=_config_float(cfg, "poll_interval", POLL_INTERVAL),
        notify_timeout=_config_int(cfg, "notify_timeout", NOTIFY_TIMEOUT),
        scan_bracket=_config_int(cfg, "scan_bracket", SCAN_BRACKET),
    )


def load_config(path: str, environ: Optional[Mapping[str, str]] = None) -> TrackerConfig:
    try:
        cfg = _load_json(path)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot load config {path}: {exc}") from exc
    if not isinstance(cfg, dict):
        raise ConfigError(f"config {path} must be a JSON object")
    return parse_config(cfg, environ)


class Tracker:
    """Wires the components together from a TrackerConfig."""

    def __init__(self, config: TrackerConfig, chain: Optional[ChainClient] = None, notifier: Optional[Notifier] = None):
        self.config = config
        self.chain = chain or ChainClient(config.rpc_http)
        self.checkpoints = CheckpointStore(config.checkpoint_file)
        self.ledger = CreditLedger(config.db_path)
        self.notifier = notifier or Notifier(config.api_url, config.api_token, config.notify_timeout)
        self.resolver = BlockTimeResolver(self.chain, config.scan_bracket)
        self.pipeline = EventPipeline(
            self.chain,
            self.ledger,
            self.notifier,
            config.contracts,
            config.tracked_token,
            threshold=config.threshold,
        )
        self.scheduler = PollingScheduler(
            self.chain,
            self.checkpoints,
            self.resolver,
            self.pipeline,
            config.window,
            batch_size=config.batch_size,
            poll_interval=config.poll_interval,
        )

    def open(self) -> None:
        self.ledger.init_db()

    def close(self) -> None:
        self.ledger.close()

    def status(self) -> Dict[str, Any]:
        return {
            "last_processed_block": self.checkpoints.load(),
            "start_time": self.config.window.start_time,
            "end_time": self.config.window.end_time,
            "credits_by_task": {str(task): n for task, n in self.ledger.count_by_task().items()},
        }


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="On-chain campaign task tracker")
    parser.add_argument("--config", default="config.json", help="Path to config JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Poll the chain until the track window closes")

    process_parser = sub.add_parser("process", help="Process a block range once (checkpoint untouched)")
    process_parser.add_argument("--from-block", type=int, required=True)
    process_parser.add_argument("--to-block", type=int, required=True)

    resolve_parser = sub.add_parser("resolve", help="First block at or after a timestamp")
    resolve_parser.add_argument("--timestamp", type=int, required=True)
    resolve_parser.add_argument("--from-block", type=int, default=0)

    sub.add_parser("status", help="Checkpoint, window and credit counts")

    credits_parser = sub.add_parser("credits", help="List credit records")
    credits_parser.add_argument("--task", type=int, default=None)
    credits_parser.add_argument("--address", type=str, default=None, help="Check one address (needs --task)")

    args = parser.parse_args(argv)
    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        _log(f"ERROR: {exc}")
        sys.exit(1)

    tracker = Tracker(cfg)
    try:
        tracker.open()
        if args.command == "run":
            try:
                asyncio.run(tracker.scheduler.run())
            except KeyboardInterrupt:
                _log("Interrupted, stopping")
            return

        if args.command == "process":
            if args.from_block > args.to_block:
                parser.error("--from-block must not exceed --to-block")
            credited = tracker.pipeline.process(args.from_block, args.to_block)
            print(_json_dumps({"from_block": args.from_block, "to_block": args.to_block, "credited": credited}))
            return

        if args.command == "resolve":
            height = tracker.resolver.resolve(args.from_block, args.timestamp)
            print(_json_dumps({"timestamp": args.timestamp, "block": height}))
            return

        if args.command == "status":
            print(_json_dumps(tracker.status()))
            return

        if args.command == "credits" and args.address:
            if args.task is None:
                parser.error("--address needs --task")
            if not Web3.is_address(args.address):
                parser.error(f"not an address: {args.address}")
            address = _to_checksum(args.address)
            credited = tracker.ledger.has_credit(address, args.task)
            print(_json_dumps({"address": address, "task_id": args.task, "credited": credited}))
            return

        if args.command == "credits":
            print(_json_dumps(tracker.ledger.list_credits(args.task)))
            return
    except TrackerError as exc:
        _log(f"ERROR: {args.command} failed: {exc}")
        sys.exit(1)
    finally:
        tracker.close()


if __name__ == "__main__":
    main()
