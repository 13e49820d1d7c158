import argparse
import json
import os
from typing import Optional

import requests

API_BASE = os.getenv("RECONCILER_API", "http://127.0.0.1:8080")


def _post_json(url: str, body: dict, timeout: float = 15) -> requests.Response:
    headers = {
        "Content-Type": "application/json",
        "Connection": "close",
    }
    resp = requests.post(url, data=json.dumps(body), headers=headers, timeout=timeout)
    print(f"POST {url} -> {resp.status_code} {resp.reason}")
    print(resp.text)
    return resp


def sweep() -> None:
    _post_json(f"{API_BASE}/auto-complete-sessions", {})


def stop(user_id: int, reason: Optional[str]) -> None:
    body = {"userId": user_id}
    if reason is not None:
        body["reason"] = reason
    _post_json(f"{API_BASE}/stop-charging", body)


def fault(device_id: str, connector_id: int, fault_code: Optional[str]) -> None:
    body = {"deviceId": device_id, "connectorId": connector_id, "status": "Faulted"}
    if fault_code is not None:
        body["faultCode"] = fault_code
    _post_json(f"{API_BASE}/charger-webhook", body)


def beacon(user_id: int) -> None:
    # same contract as a page-unload beacon: short timeout, result not awaited by the sender
    try:
        _post_json(f"{API_BASE}/beacon", {"userId": user_id}, timeout=2)
    except requests.RequestException as e:
        print(f"beacon not delivered: {e}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive the session reconciler over HTTP")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("sweep", help="run one reconciliation sweep now")

    p_stop = sub.add_parser("stop", help="stop all active sessions of a user")
    p_stop.add_argument("userId", type=int)
    p_stop.add_argument("reason", nargs="?", default=None)

    p_fault = sub.add_parser("fault", help="report a charger fault")
    p_fault.add_argument("deviceId")
    p_fault.add_argument("connectorId", type=int)
    p_fault.add_argument("faultCode", nargs="?", default=None)

    p_beacon = sub.add_parser("beacon", help="send an app-exit beacon for a user")
    p_beacon.add_argument("userId", type=int)

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if args.cmd == "sweep":
        sweep()
    elif args.cmd == "stop":
        stop(args.userId, args.reason)
    elif args.cmd == "fault":
        fault(args.deviceId, args.connectorId, args.faultCode)
    elif args.cmd == "beacon":
        beacon(args.userId)


if __name__ == "__main__":
    main()
