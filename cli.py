from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _parse_service(raw: str) -> dict:
    """NAME=IMAGE[,port=N][,health=/path][,route=/prefix/]"""
    head, *opts = raw.split(",")
    if "=" not in head:
        raise argparse.ArgumentTypeError(f"expected NAME=IMAGE, got '{head}'")
    name, image = head.split("=", 1)
    svc: dict = {"name": name, "imageReference": image}
    keys = {"port": "containerPort", "health": "healthCheckPath", "route": "proxyRoute"}
    for opt in opts:
        k, _, v = opt.partition("=")
        if k not in keys or not v:
            raise argparse.ArgumentTypeError(f"unknown option '{opt}' (use port=, health=, route=)")
        svc[keys[k]] = int(v) if k == "port" else v
    return svc


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Continuous Deployment Agent CLI")
    p.add_argument("--api", default=os.getenv("CDA_API", "http://localhost:8000"), help="API base URL")
    p.add_argument("--user", default=os.getenv("CDA_API_USER"))
    p.add_argument("--password", default=os.getenv("CDA_API_PASSWORD"))
    sub = p.add_subparsers(dest="cmd", required=True)

    s_sub = sub.add_parser("submit", help="Queue a deployment")
    s_sub.add_argument(
        "service",
        nargs="+",
        type=_parse_service,
        help="NAME=IMAGE[,port=N][,health=/path][,route=/prefix/]",
    )
    s_sub.add_argument("--prune", action="store_true", help="Remove active services not listed")

    s_st = sub.add_parser("status", help="Show one deployment, or the agent status")
    s_st.add_argument("id", nargs="?")

    sub.add_parser("active", help="Show the active deployment record")

    s_wd = sub.add_parser("withdraw", help="Withdraw a queued deployment")
    s_wd.add_argument("id")

    s_rec = sub.add_parser("records", help="Show the deployment log")
    s_rec.add_argument("--limit", type=int, default=20)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password) if args.user and args.password else None

    if args.cmd == "submit":
        payload = {"services": args.service, "prune": args.prune}
        r = requests.post(f"{base}/deployments", json=payload, auth=auth, timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "status":
        url = f"{base}/deployments/{args.id}" if args.id else f"{base}/status"
        r = requests.get(url, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "active":
        r = requests.get(f"{base}/deployments/active", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "withdraw":
        r = requests.delete(f"{base}/deployments/{args.id}", auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "records":
        _print(requests.get(f"{base}/records", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
