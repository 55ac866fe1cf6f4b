"""
In-memory stand-ins for novadbplus nodes.

FakeServer holds the state of one node (typed keyspace with expiry, per-store
binlog counters, replication link, output-buffer limits); FakeRedis speaks
the subset of the redis.asyncio client API the harness uses against it.
FakeCluster maps ports to servers and provides the client factory handed to
NodeHandle / NodeController / Orchestrator.
"""

import asyncio
import copy
import os
import zlib
from collections import deque
from typing import Callable, Dict, List, Optional, Tuple

from redis.exceptions import AuthenticationError, ConnectionError, ResponseError

from novadb_harness.admission import HARD_MB, SOFT_MB, SOFT_SECONDS

# bytes a single list element occupies in the pending reply
ELEMENT_REPLY_COST = 40
MB = 1024 * 1024
TEST_HOST = "127.0.0.1"
TEST_PASSWORD = "novadb+test"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeServer:
    def __init__(self, store_count: int = 1, password: Optional[str] = None,
                 clock: Callable[[], float] = None, db_path: Optional[str] = None):
        self.store_count = store_count
        self.password = password
        self.clock = clock or FakeClock()
        self.db_path = db_path
        self.cluster: Optional["FakeCluster"] = None
        # key -> [type, value, expire_at]
        self.data: Dict[str, list] = {}
        self.binlog = [0] * store_count
        self.config: Dict[str, str] = {} if db_path is None else {"dir": db_path}
        self.rejected_config = set()
        self.noexpire = False
        self.alive = True
        self.fail_writes = False
        # LOADING replies left before the node serves commands
        self.loading = 0
        # seconds each pipeline round trip takes
        self.latency = 0.0
        self.commands: List[Tuple] = []
        # replication
        self.leader: Optional["FakeServer"] = None
        self.master_addr: Optional[Tuple[str, int]] = None
        self.auto_replicate = True
        self.sync_state: Dict[int, str] = {}
        # scripted replies, consumed front to back
        self.position_script: Dict[int, List[int]] = {}
        self.remain_script: Dict[int, List[int]] = {}

    # keyspace

    def store_of(self, key: str) -> int:
        return zlib.crc32(key.encode()) % self.store_count

    def entry(self, key: str):
        entry = self.data.get(key)
        if entry is None:
            return None
        if entry[2] is not None and entry[2] <= self.clock() and not self.noexpire:
            del self.data[key]
            return None
        return entry

    def write(self, key: str) -> None:
        if self.fail_writes:
            raise ResponseError("ERR write rejected")
        self.binlog[self.store_of(key)] += 1

    def typed(self, key: str, kind: str, empty):
        entry = self.entry(key)
        if entry is None:
            entry = self.data[key] = [kind, empty, None]
        elif entry[0] != kind:
            raise ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return entry

    def set_expire(self, key: str, seconds: float) -> None:
        """Test helper: attach a TTL without touching the binlog."""
        self.data[key][2] = self.clock() + seconds

    def sweep(self) -> None:
        for key in list(self.data):
            self.entry(key)

    # replication

    def sync(self) -> None:
        if self.leader is not None and self.auto_replicate:
            self.data = copy.deepcopy(self.leader.data)
            self.binlog = list(self.leader.binlog)

    def binlog_pos(self, store: int) -> int:
        script = self.position_script.get(store)
        if script:
            return script.pop(0)
        return self.binlog[store]

    def info(self, section: Optional[str]) -> Dict:
        if section == "replication":
            info = {"role": "slave" if self.master_addr else "master"}
            if self.master_addr:
                info["master_host"], info["master_port"] = self.master_addr
                for store in range(self.store_count):
                    info[f"rocksdb{store}_master"] = {
                        "ip": self.master_addr[0],
                        "port": self.master_addr[1],
                        "src_store_id": store,
                        "state": self.sync_state.get(store, "online"),
                        "binlog_pos": self.binlog[store],
                    }
            return info
        if section == "binloginfo":
            info = {}
            for store in range(self.store_count):
                script = self.remain_script.get(store)
                remain = script.pop(0) if script else 0
                info[f"rocksdb{store}"] = {"min": 0, "max": self.binlog[store], "remain": remain}
            return info
        return {"redis_version": "fake"}

    def admin(self, args) -> object:
        name = str(args[0]).upper()
        self.commands.append(tuple(str(a) for a in args))
        if name == "BINLOGPOS":
            return self.binlog_pos(int(args[1]))
        if name == "BACKUP":
            directory, mode = str(args[1]), str(args[2])
            if self.db_path is not None and directory == self.db_path:
                raise ResponseError("ERR:4,msg:dir cant be dbPath:" + directory)
            if self.cluster is None or not self.cluster.dir_exists(directory):
                raise ResponseError("ERR:4,msg:dir not exist:" + directory)
            self.cluster.snapshots[directory] = (mode, copy.deepcopy(self.data), list(self.binlog))
            return "OK"
        if name == "RESTOREBACKUP":
            directory = str(args[2])
            if self.cluster is None or directory not in self.cluster.snapshots:
                raise ResponseError("ERR:4,msg:no backup in " + directory)
            _, data, binlog = self.cluster.snapshots[directory]
            self.data = copy.deepcopy(data)
            self.binlog = list(binlog)
            return "OK"
        if name == "BINLOGFLUSH":
            return "OK"
        if name == "SHUTDOWN":
            self.alive = False
            raise ConnectionError("Connection closed by server.")
        raise ResponseError(f"ERR unknown command '{args[0]}'")


class FakeCluster:
    """Servers by port, plus the directories and snapshots they share."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.servers: Dict[int, FakeServer] = {}
        self.snapshots: Dict[str, tuple] = {}
        self.directories = set()
        self.clients: List["FakeRedis"] = []

    def add(self, port: int, **kwargs) -> FakeServer:
        kwargs.setdefault("clock", self.clock)
        server = FakeServer(**kwargs)
        server.cluster = self
        self.servers[port] = server
        return server

    def dir_exists(self, directory: str) -> bool:
        return directory in self.directories or os.path.isdir(directory)

    def factory(self, host: str = "127.0.0.1", port: int = 0, password: Optional[str] = None,
                db: int = 0, **options) -> "FakeRedis":
        client = FakeRedis(self, self.servers.get(port), password=password, db=db, **options)
        self.clients.append(client)
        return client


class FakePipeline:
    def __init__(self, client: "FakeRedis"):
        self._client = client
        self._queued = []

    def __getattr__(self, name):
        method = getattr(self._client, name)

        def queue(*args, **kwargs):
            self._queued.append((method, args, kwargs))
            return self

        return queue

    async def execute(self, raise_on_error: bool = True):
        queued, self._queued = self._queued, []
        server = self._client.server
        if server is not None and server.latency:
            await asyncio.sleep(server.latency)
        return [await method(*args, **kwargs) for method, args, kwargs in queued]


class FakeRedis:
    def __init__(self, cluster: FakeCluster, server: Optional[FakeServer],
                 password: Optional[str] = None, db: int = 0, **options):
        self.cluster = cluster
        self.server = server
        self.password = password
        self.db = db
        self.options = options
        self.closed = False
        self.dropped = False
        self.soft_breach_since: Optional[float] = None

    def _check(self) -> FakeServer:
        server = self.server
        if server is None or not server.alive:
            raise ConnectionError("Error 111 connecting. Connection refused.")
        if self.dropped:
            raise ConnectionError("Connection closed by server.")
        if server.password is not None and self.password != server.password:
            raise AuthenticationError("invalid password")
        if server.loading:
            server.loading -= 1
            raise ResponseError("LOADING novadbplus is loading the dataset in memory")
        server.sync()
        return server

    def _normal(self) -> FakeServer:
        # any ordinary command resets the soft-limit timer
        server = self._check()
        self.soft_breach_since = None
        return server

    # admin

    async def ping(self):
        self._normal()
        return True

    async def info(self, section=None):
        return self._normal().info(section)

    async def config_set(self, name, value):
        server = self._normal()
        if name in server.rejected_config:
            raise ResponseError(f"ERR Invalid argument '{value}' for CONFIG SET '{name}'")
        server.config[name] = str(value)
        if name == "noexpire":
            server.noexpire = str(value).lower() in ("yes", "true")
        return True

    async def config_get(self, pattern="*"):
        server = self._normal()
        return {pattern: server.config[pattern]} if pattern in server.config else {}

    async def slaveof(self, host=None, port=None):
        server = self._normal()
        server.commands.append(("SLAVEOF", host, port))
        server.master_addr = (host, int(port))
        server.leader = self.cluster.servers.get(int(port))
        server.sync()
        return True

    async def execute_command(self, *args, **options):
        return self._normal().admin(args)

    async def scan_iter(self, match=None, count=None, _type=None):
        server = self._normal()
        server.sweep()
        for key in list(server.data):
            yield key

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True

    # reads

    async def type(self, key):
        entry = self._normal().entry(key)
        return "none" if entry is None else entry[0]

    async def pttl(self, key):
        server = self._normal()
        entry = server.entry(key)
        if entry is None:
            return -2
        if entry[2] is None:
            return -1
        return max(0, int((entry[2] - server.clock()) * 1000))

    async def exists(self, *keys):
        server = self._normal()
        return sum(1 for key in keys if server.entry(key) is not None)

    async def get(self, key):
        entry = self._normal().entry(key)
        return None if entry is None else entry[1]

    async def smembers(self, key):
        entry = self._normal().entry(key)
        return set() if entry is None else set(entry[1])

    async def hgetall(self, key):
        entry = self._normal().entry(key)
        return {} if entry is None else dict(entry[1])

    async def zrange(self, key, start, end, withscores=False):
        entry = self._normal().entry(key)
        if entry is None:
            return []
        ordered = sorted(entry[1].items(), key=lambda item: (item[1], item[0]))
        ordered = _slice(ordered, start, end)
        if withscores:
            return [(member, float(score)) for member, score in ordered]
        return [member for member, _ in ordered]

    async def llen(self, key):
        entry = self._normal().entry(key)
        return 0 if entry is None else len(entry[1])

    async def lrange(self, key, start, end):
        server = self._check()
        entry = server.entry(key)
        items = [] if entry is None else _slice(entry[1], start, end)
        self._account_reply(server, len(items) * ELEMENT_REPLY_COST)
        return list(items)

    def _account_reply(self, server: FakeServer, size: int) -> None:
        hard = int(server.config.get(HARD_MB, 0)) * MB
        soft = int(server.config.get(SOFT_MB, 0)) * MB
        soft_seconds = int(server.config.get(SOFT_SECONDS, 0))
        if hard and size > hard:
            self.dropped = True
            raise ConnectionError("Connection closed by server.")
        if soft and soft_seconds and size > soft:
            now = server.clock()
            if self.soft_breach_since is None:
                self.soft_breach_since = now
            elif now - self.soft_breach_since >= soft_seconds:
                self.dropped = True
                raise ConnectionError("Connection closed by server.")
        else:
            self.soft_breach_since = None

    # writes

    async def set(self, key, value):
        server = self._normal()
        server.write(key)
        server.data[key] = ["string", str(value), None]
        return True

    async def lpush(self, key, *values):
        server = self._normal()
        server.write(key)
        entry = server.typed(key, "list", deque())
        for value in values:
            entry[1].appendleft(str(value))
        return len(entry[1])

    async def rpush(self, key, *values):
        server = self._normal()
        server.write(key)
        entry = server.typed(key, "list", deque())
        entry[1].extend(str(v) for v in values)
        return len(entry[1])

    async def sadd(self, key, *members):
        server = self._normal()
        server.write(key)
        entry = server.typed(key, "set", set())
        before = len(entry[1])
        entry[1].update(str(m) for m in members)
        return len(entry[1]) - before

    async def hset(self, key, field=None, value=None, mapping=None):
        server = self._normal()
        server.write(key)
        entry = server.typed(key, "hash", {})
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        entry[1].update({str(k): str(v) for k, v in items.items()})
        return len(items)

    async def zadd(self, key, mapping):
        server = self._normal()
        server.write(key)
        entry = server.typed(key, "zset", {})
        entry[1].update({str(m): float(s) for m, s in mapping.items()})
        return len(mapping)

    async def expire(self, key, seconds):
        server = self._normal()
        entry = server.entry(key)
        if entry is None:
            return False
        server.write(key)
        entry[2] = server.clock() + seconds
        return True

    async def delete(self, *keys):
        server = self._normal()
        removed = 0
        for key in keys:
            if server.entry(key) is not None:
                server.write(key)
                del server.data[key]
                removed += 1
        return removed


def _slice(items, start: int, end: int):
    items = list(items)
    stop = len(items) if end == -1 else end + 1
    return items[start:stop]
