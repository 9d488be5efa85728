"""Platform API client for the duels platform.

Thin HTTP client with a pluggable transport interface.
Default transport: HTTP with Ed25519 request signing.

Also a small CLI:

    python client.py keygen
    python client.py create 100
    python client.py join 0 130
    python client.py withdraw 0
"""

import argparse
import asyncio
import json
import os
import sys
from abc import ABC, abstractmethod

import httpx

from crypto import generate_keypair, load_key, privkey_to_account, save_key, sign_request
from protocol import from_units, to_units

DEFAULT_SERVER = os.environ.get("DUELS_SERVER", "http://localhost:8000")
DEFAULT_KEY_PATH = os.path.expanduser(os.environ.get("DUELS_KEY", "~/.duels/key"))


class DuelAPIError(Exception):
    """Server rejected a request. `code` is the duel error name when the server sent one."""

    def __init__(self, status: int, code: str, detail: str):
        super().__init__(f"{status} {code}: {detail}")
        self.status = status
        self.code = code
        self.detail = detail


class Transport(ABC):
    """Override this to reach the platform some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> dict:
        ...


class HTTPTransport(Transport):
    """Default. Talks to the platform over HTTP, signing POSTs with Ed25519."""

    def __init__(self, base_url: str = DEFAULT_SERVER, privkey_bytes: bytes | None = None,
                 timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.privkey_bytes = privkey_bytes
        self.timeout = timeout

    def _headers(self, method: str, path: str, body: str = "") -> dict:
        h = {"Content-Type": "application/json"}
        if self.privkey_bytes:
            h.update(sign_request(self.privkey_bytes, method, path, body))
        return h

    @staticmethod
    def _check(resp: httpx.Response) -> dict:
        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {}
            detail = payload.get("detail", resp.text)
            raise DuelAPIError(resp.status_code, payload.get("error", "HTTPError"), str(detail))
        return resp.json()

    async def post(self, path: str, data: dict) -> dict:
        body = json.dumps(data)
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.base_url}{path}",
                content=body,
                headers=self._headers("POST", path, body),
                timeout=self.timeout,
            )
            return self._check(resp)

    async def get(self, path: str, params: dict | None = None) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers("GET", path),
                timeout=self.timeout,
            )
            return self._check(resp)


class DuelClient:
    """High-level client for the duels platform. Amounts are integer base units."""

    def __init__(self, transport: Transport | None = None, base_url: str = DEFAULT_SERVER,
                 privkey_bytes: bytes | None = None):
        self.account = privkey_to_account(privkey_bytes) if privkey_bytes else ""
        self.transport = transport or HTTPTransport(base_url, privkey_bytes=privkey_bytes)

    def _require_account(self):
        if not self.account:
            raise RuntimeError("A private key is required for signed actions")

    # --- Queries ---

    async def platform_info(self) -> dict:
        return await self.transport.get("/platform_info")

    async def count(self) -> int:
        resp = await self.transport.get("/duels/count")
        return resp["count"]

    async def get_duel(self, idx: int) -> dict:
        return await self.transport.get(f"/duels/{idx}")

    async def list_duels(self, status: str = "", limit: int = 50) -> list[dict]:
        params = {"limit": limit}
        if status:
            params["status"] = status
        resp = await self.transport.get("/duels", params)
        return resp["duels"]

    async def stats(self) -> dict:
        return await self.transport.get("/stats")

    # --- Lifecycle ---

    async def create(self, amount: int) -> dict:
        """Open a duel staking `amount`. Returns the new duel record."""
        self._require_account()
        return await self.transport.post("/duels", {"account": self.account, "amount": str(amount)})

    async def join(self, idx: int, amount: int) -> dict:
        """Join duel `idx` staking `amount`. Returns the settled record, winner included."""
        self._require_account()
        return await self.transport.post(f"/duels/{idx}/join", {"account": self.account, "amount": str(amount)})

    async def withdraw(self, idx: int) -> dict:
        self._require_account()
        return await self.transport.post(f"/duels/{idx}/withdraw", {"account": self.account})

    async def expire(self, idx: int) -> dict:
        """Owner only."""
        self._require_account()
        return await self.transport.post(f"/duels/{idx}/expire", {"account": self.account})


# --- CLI ---

def _format_duel(d: dict) -> str:
    lines = [
        f"Duel #{d['index']}  [{d['status']}]",
        f"  host:   {d['host']}  stake {from_units(d['host_stake'])}",
    ]
    if d.get("guest"):
        lines.append(f"  guest:  {d['guest']}  stake {from_units(d['guest_stake'])}")
    lines.append(f"  pool:   {from_units(d['pool'])}")
    if d.get("winner"):
        lines.append(f"  winner: {d['winner']}")
    elif d["status"] == "awaiting_guest":
        lines.append(f"  join with {from_units(d['join_min'])} .. {from_units(d['join_max'])}")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="duels", description="Duels platform client")
    parser.add_argument("--server", default=DEFAULT_SERVER, help="platform base URL")
    parser.add_argument("--key", default=DEFAULT_KEY_PATH, help="path to Ed25519 private key")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("keygen", help="create a new account key")
    sub.add_parser("whoami", help="print this key's account id")
    sub.add_parser("info", help="platform parameters")
    ls = sub.add_parser("list", help="list duels")
    ls.add_argument("--status", default="awaiting_guest")
    ls.add_argument("--limit", type=int, default=20)
    show = sub.add_parser("show", help="show one duel")
    show.add_argument("idx", type=int)
    create = sub.add_parser("create", help="open a duel")
    create.add_argument("amount", help="stake in tokens, e.g. 2.5")
    join = sub.add_parser("join", help="join a duel")
    join.add_argument("idx", type=int)
    join.add_argument("amount", help="stake in tokens")
    for name in ("withdraw", "expire"):
        p = sub.add_parser(name, help=f"{name} a duel")
        p.add_argument("idx", type=int)
    return parser


async def run(args) -> str:
    if args.command == "keygen":
        if os.path.exists(args.key):
            raise SystemExit(f"Key already exists: {args.key}")
        os.makedirs(os.path.dirname(args.key) or ".", exist_ok=True)
        priv, _ = generate_keypair()
        save_key(args.key, priv)
        return privkey_to_account(priv)

    privkey = load_key(args.key) if os.path.exists(args.key) else None
    client = DuelClient(base_url=args.server, privkey_bytes=privkey)

    if args.command == "whoami":
        return client.account or "no key (run keygen)"
    if args.command == "info":
        return json.dumps(await client.platform_info(), indent=2)
    if args.command == "list":
        duels = await client.list_duels(args.status, args.limit)
        return "\n".join(_format_duel(d) for d in duels) or "no duels"
    if args.command == "show":
        return _format_duel(await client.get_duel(args.idx))
    if args.command == "create":
        return _format_duel(await client.create(to_units(args.amount)))
    if args.command == "join":
        return _format_duel(await client.join(args.idx, to_units(args.amount)))
    if args.command == "withdraw":
        result = await client.withdraw(args.idx)
        return f"Withdrew {from_units(result['payout'])} (fee {from_units(result['fee'])})"
    if args.command == "expire":
        return _format_duel(await client.expire(args.idx))
    raise SystemExit(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        print(asyncio.run(run(args)))
    except DuelAPIError as e:
        print(f"error: {e.code}: {e.detail}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
