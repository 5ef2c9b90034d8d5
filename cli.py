from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _fail(r: requests.Response) -> int:
    try:
        body = r.json()
    except ValueError:
        body = {"error": r.status_code, "detail": r.text}
    print(f"Error: {body.get('detail') or body}", file=sys.stderr)
    return 1


def _table(proxies: list[dict]) -> None:
    if not proxies:
        print("No proxies found")
        return
    header = f"{'ID':<10}{'Port':<7}{'Region':<22}{'Exit IP':<17}{'OK':<4}{'Restarts':<10}Created"
    print(header)
    print("-" * len(header))
    for p in proxies:
        region = f"{p.get('country') or 'Any'}/{p.get('city') or 'Any'}"
        print(
            f"{p['id'][:8]:<10}{p['port']:<7}{region:<22}{p.get('exit_ip') or '-':<17}"
            f"{'yes' if p['healthy'] else 'no':<4}{p['restarts']:<10}{p['created_at']}"
        )
    print(f"\nTotal: {len(proxies)} proxies")


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="pf", description="Proxy Farm CLI")
    p.add_argument("--api", default="http://127.0.0.1:8080", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_add = sub.add_parser("add", help="Create a new proxy")
    s_add.add_argument("--country", help="Country code (e.g. US), hint only")
    s_add.add_argument("--city", help="City name, hint only")
    s_add.add_argument("--notes")
    s_add.add_argument("--port", type=int, help="Use this host port instead of allocating one")

    s_up = sub.add_parser("up", help="Bulk create proxies")
    s_up.add_argument("--count", type=int, default=1)
    s_up.add_argument("--country")
    s_up.add_argument("--city")

    s_ls = sub.add_parser("ls", aliases=["list"], help="List proxies")
    s_ls.add_argument("--live", action="store_true", help="Probe every proxy first")
    s_ls.add_argument("--json", action="store_true", help="Output as JSON")

    s_rm = sub.add_parser("rm", aliases=["remove"], help="Remove a proxy")
    s_rm.add_argument("id")

    s_rot = sub.add_parser("rotate", help="Restart a proxy (may change exit IP)")
    s_rot.add_argument("id")

    s_health = sub.add_parser("health", help="Probe one proxy")
    s_health.add_argument("id")

    sub.add_parser("heal", help="Reconcile, dedupe and restart unhealthy proxies")
    sub.add_parser("status", help="Show fleet summary")

    s_ev = sub.add_parser("events", help="Show recent events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "add":
        payload = {"country": args.country, "city": args.city, "notes": args.notes, "port": args.port}
        r = requests.post(f"{base}/proxies", json=payload, timeout=120)
        if not r.ok:
            return _fail(r)
        _print(r.json())
        return 0

    if args.cmd == "up":
        payload = {"count": args.count, "country": args.country, "city": args.city}
        r = requests.post(f"{base}/proxies/batch", json=payload, timeout=600)
        if not r.ok:
            return _fail(r)
        body = r.json()
        for proxy in body["created"]:
            print(f"Created proxy {proxy['id'][:8]} on port {proxy['port']}")
        for err in body["errors"]:
            print(f"Failed: {err}", file=sys.stderr)
        print(f"\nCreated {len(body['created'])} of {args.count} proxies")
        return 0 if body["created"] else 1

    if args.cmd in {"ls", "list"}:
        r = requests.get(f"{base}/proxies", params={"live": str(args.live).lower()}, timeout=300)
        if not r.ok:
            return _fail(r)
        if args.json:
            _print(r.json())
        else:
            _table(r.json())
        return 0

    if args.cmd in {"rm", "remove"}:
        r = requests.delete(f"{base}/proxies/{args.id}", timeout=60)
        if not r.ok:
            return _fail(r)
        print("Proxy removed successfully")
        return 0

    if args.cmd == "rotate":
        r = requests.post(f"{base}/proxies/{args.id}/rotate", timeout=120)
        if not r.ok:
            return _fail(r)
        _print(r.json())
        return 0

    if args.cmd == "health":
        r = requests.get(f"{base}/proxies/{args.id}/health", timeout=60)
        if not r.ok:
            return _fail(r)
        _print(r.json())
        return 0 if r.json()["healthy"] else 1

    if args.cmd == "heal":
        r = requests.post(f"{base}/heal", timeout=900)
        if not r.ok:
            return _fail(r)
        _print(r.json())
        return 0

    if args.cmd == "status":
        _print(requests.get(f"{base}/status", timeout=10).json())
        return 0

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
