from __future__ import annotations

"""Operator command line.

Settings and ledger maintenance commands work on the local files directly.
pay / replay / rollback / unpaid are sent to the running service over its
unix socket.
"""

import argparse
import json
import sys
from typing import Any, Callable, Dict, List, Optional

import httpx

from tbw.config import TbwConfig, load_tbw_config
from tbw.env import load_dotenv_if_present
from tbw.errors import ConfigurationError, TbwError
from tbw.ledger.settings import SettingsStore
from tbw.ledger.store import HistoryStore, LedgerStore
from tbw.pay.rounds import RoundCalculator
from tbw.runtime.sqlite_db import SqliteDB

Json = Dict[str, Any]

_NONE = {"none", "null", ""}


def _optional_int(raw: str) -> Optional[int]:
    return None if raw.strip().lower() in _NONE else int(raw)


def _optional_str(raw: str) -> Optional[str]:
    return None if raw.strip().lower() in _NONE else raw


# cli name -> (settings field, parser)
_FIELDS: Dict[str, tuple] = {
    "mode": ("mode", str),
    "sharing": ("sharing", int),
    "extra-fee": ("extra_fee", int),
    "max": ("max_cap", _optional_int),
    "min": ("min_cap", _optional_int),
    "fidelity": ("fidelity", _optional_int),
    "memo": ("memo", str),
    "pay-fees": ("pay_fees", lambda raw: raw.strip().lower()),
    "passphrase": ("passphrase", _optional_str),
    "second-passphrase": ("second_passphrase", _optional_str),
}


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2))


def _stores(cfg: TbwConfig):
    db = SqliteDB(path=cfg.db_path)
    return SettingsStore(cfg.settings_path), LedgerStore(db=db), HistoryStore(db=db)


def _client(cfg: TbwConfig, timeout_s: float) -> httpx.Client:
    transport = httpx.HTTPTransport(uds=cfg.socket_path)
    return httpx.Client(transport=transport, base_url="http://tbw", timeout=timeout_s)


def _post(cfg: TbwConfig, path: str, body: Json, *, timeout_s: float = 30.0) -> int:
    try:
        with _client(cfg, timeout_s) as client:
            r = client.post(path, json=body)
    except httpx.HTTPError as e:
        print(f"ERROR: could not reach the payout service at {cfg.socket_path}: {e}", file=sys.stderr)
        return 1
    try:
        data = r.json()
    except ValueError:
        data = {"success": r.is_success, "status": r.status_code}
    _print(data)
    return 0 if r.is_success and data.get("success") else 1


# ---- settings commands ----


def _cmd_setup(cfg: TbwConfig, args: argparse.Namespace) -> int:
    settings, _, _ = _stores(cfg)
    if settings.exists() and not args.force:
        print(f"settings already exist at {settings.path}; use --force to overwrite", file=sys.stderr)
        return 1
    _print(settings.create_default().public_settings())
    return 0


def _cmd_set(cfg: TbwConfig, args: argparse.Namespace) -> int:
    settings, _, _ = _stores(cfg)
    field_name, parse = _FIELDS[args.field]
    try:
        value = parse(args.value)
    except ValueError as e:
        raise ConfigurationError(f"invalid value for {args.field}: {args.value!r}") from e
    _print(settings.update(**{field_name: value}).public_settings())
    return 0


def _cmd_list(kind: str) -> Callable[[TbwConfig, argparse.Namespace], int]:
    def run(cfg: TbwConfig, args: argparse.Namespace) -> int:
        settings, _, _ = _stores(cfg)
        if args.action in {"add", "remove"} and not args.address:
            print(f"ERROR: {kind} {args.action} needs an address", file=sys.stderr)
            return 2
        if args.action == "add":
            s = getattr(settings, f"add_to_{kind}")(args.address)
        elif args.action == "remove":
            s = getattr(settings, f"remove_from_{kind}")(args.address)
        elif args.action == "clear":
            s = getattr(settings, f"clear_{kind}")()
        else:
            s = settings.read()
        _print(getattr(s, kind))
        return 0

    return run


def _cmd_routes(cfg: TbwConfig, args: argparse.Namespace) -> int:
    settings, _, _ = _stores(cfg)
    if args.action == "add":
        if len(args.addresses) != 2:
            print("ERROR: routes add needs <source> <destination>", file=sys.stderr)
            return 2
        s = settings.add_route(args.addresses[0], args.addresses[1])
    elif args.action == "remove":
        if len(args.addresses) != 1:
            print("ERROR: routes remove needs <source>", file=sys.stderr)
            return 2
        s = settings.remove_route(args.addresses[0])
    elif args.action == "clear":
        s = settings.clear_routes()
    else:
        s = settings.read()
    _print(s.routes)
    return 0


def _parse_reserve(items: List[str]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for item in items:
        address, sep, pct = item.partition("=")
        if not sep:
            raise ConfigurationError(f"reserve entries look like address=percentage; got {item!r}")
        try:
            out[address.strip()] = int(pct)
        except ValueError as e:
            raise ConfigurationError(f"reserve percentage must be an integer; got {pct!r}") from e
    return out


def _cmd_reserve(cfg: TbwConfig, args: argparse.Namespace) -> int:
    settings, _, _ = _stores(cfg)
    if args.action == "set":
        s = settings.set_reserve(_parse_reserve(args.entries))
    elif args.action == "clear":
        s = settings.set_reserve({})
    else:
        s = settings.read()
    _print(s.reserve)
    return 0


# ---- history / ledger commands ----


def _cmd_history(cfg: TbwConfig, args: argparse.Namespace) -> int:
    _, _, history = _stores(cfg)
    if args.action == "flush":
        path = history.flush()
        _print({"archived": str(path) if path else None})
        return 0
    _print([s.to_dict() for s in history.all()])
    return 0


def _cmd_unconfirmed(cfg: TbwConfig, args: argparse.Namespace) -> int:
    _, _, history = _stores(cfg)
    if args.words:
        if len(args.words) != 2 or args.words[0] != "show":
            print("ERROR: usage: unconfirmed [show <id>]", file=sys.stderr)
            return 2
        s = history.get(args.words[1])
        if s is None:
            print(f"ERROR: no settlement with id {args.words[1]}", file=sys.stderr)
            return 1
        _print(s.to_dict())
        return 0
    _print(
        [
            {"id": s.id, "height": s.height, "status": s.status.value, "total_amount": str(s.total_amount)}
            for s in history.not_confirmed()
        ]
    )
    return 0


def _cmd_database(cfg: TbwConfig, args: argparse.Namespace) -> int:
    settings, ledger, history = _stores(cfg)
    if args.action == "delete":
        target = args.target or "all"
        if target not in {"blocks", "history", "all"}:
            print("ERROR: database delete takes blocks, history or all", file=sys.stderr)
            return 2
        if target in {"blocks", "all"}:
            ledger.wipe()
        if target in {"history", "all"}:
            history.flush()
        _print({"deleted": target})
        return 0

    if args.target is None:
        print(f"ERROR: database {args.action} needs a height", file=sys.stderr)
        return 2
    height = int(args.target)

    if args.action == "prune":
        ledger.delete_before(height)
        _print({"pruned_below": height})
        return 0

    # set-start
    s = settings.read()
    history.flush()
    refill_from = ledger.set_start(height, rounds=RoundCalculator(cfg.active_delegates), fidelity=s.fidelity)
    return _post(cfg, "/rollback", {"height": refill_from})


# ---- service commands ----


def _cmd_pay(cfg: TbwConfig, args: argparse.Namespace) -> int:
    return _post(cfg, "/pay", {}, timeout_s=cfg.worker_timeout_s + 30.0)


def _cmd_replay(cfg: TbwConfig, args: argparse.Namespace) -> int:
    return _post(cfg, "/repay", {"id": args.id})


def _cmd_rollback(cfg: TbwConfig, args: argparse.Namespace) -> int:
    return _post(cfg, "/rollback", {"height": int(args.height)})


def _cmd_unpaid(cfg: TbwConfig, args: argparse.Namespace) -> int:
    return _post(cfg, "/unpaid", {"username": args.username}, timeout_s=cfg.worker_timeout_s + 30.0)


def _cmd_serve(cfg: TbwConfig, args: argparse.Namespace) -> int:
    from tbw.api.__main__ import serve

    serve(socket_path=args.socket)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="tbw", description="True block weight payouts")
    ap.add_argument("--config", dest="config_path", default=None, help="Path to the service JSON config")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("setup", help="Create default settings")
    p.add_argument("--force", action="store_true")
    p.set_defaults(func=_cmd_setup)

    p = sub.add_parser("set", help="Change one settings field")
    p.add_argument("field", choices=sorted(_FIELDS))
    p.add_argument("value")
    p.set_defaults(func=_cmd_set)

    for kind in ("blacklist", "whitelist"):
        p = sub.add_parser(kind, help=f"Manage the {kind}")
        p.add_argument("action", choices=["add", "remove", "clear", "show"])
        p.add_argument("address", nargs="?")
        p.set_defaults(func=_cmd_list(kind))

    p = sub.add_parser("routes", help="Manage payout routes")
    p.add_argument("action", choices=["add", "remove", "clear", "show"])
    p.add_argument("addresses", nargs="*")
    p.set_defaults(func=_cmd_routes)

    p = sub.add_parser("reserve", help="Manage reserve addresses")
    p.add_argument("action", choices=["set", "clear", "show"])
    p.add_argument("entries", nargs="*", help="address=percentage")
    p.set_defaults(func=_cmd_reserve)

    p = sub.add_parser("history", help="Show or archive settlements")
    p.add_argument("action", choices=["show", "flush"], nargs="?", default="show")
    p.set_defaults(func=_cmd_history)

    p = sub.add_parser("unconfirmed", help="List unconfirmed settlements")
    p.add_argument("words", nargs="*", metavar="show <id>")
    p.set_defaults(func=_cmd_unconfirmed)

    p = sub.add_parser("database", help="Ledger maintenance")
    p.add_argument("action", choices=["delete", "prune", "set-start"])
    p.add_argument("target", nargs="?")
    p.set_defaults(func=_cmd_database)

    p = sub.add_parser("pay", help="Run a payout cycle on the service")
    p.set_defaults(func=_cmd_pay)

    p = sub.add_parser("replay", help="Replay an unconfirmed settlement")
    p.add_argument("id")
    p.set_defaults(func=_cmd_replay)

    p = sub.add_parser("rollback", help="Roll the host and ledger back to a height")
    p.add_argument("height", type=int)
    p.set_defaults(func=_cmd_rollback)

    p = sub.add_parser("unpaid", help="Preview the paytable without paying")
    p.add_argument("username")
    p.set_defaults(func=_cmd_unpaid)

    p = sub.add_parser("serve", help="Run the payout service on its unix socket")
    p.add_argument("--socket", default=None)
    p.set_defaults(func=_cmd_serve)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv_if_present()
    args = build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    try:
        cfg = load_tbw_config(config_path=args.config_path)
        return int(args.func(cfg, args))
    except TbwError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        if e.details:
            print(json.dumps(e.details, indent=2), file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
