"""
Push text or a bitmap to every connected device through the control plane.

Usage:
    python tools/push.py text "Meeting in 5 minutes" [duration_ms]
    python tools/push.py bitmap frame.bmp [duration_ms]
    python tools/push.py status
    python tools/push.py mic|copilot [on|off]

BRIDGE_URL overrides the default http://127.0.0.1:3001.
"""

import base64
import json
import os
import sys
from pathlib import Path

import httpx

BASE_URL = os.environ.get("BRIDGE_URL", "http://127.0.0.1:3001")


def _duration(args: list[str]) -> dict:
    return {"duration": int(args[0])} if args else {}


def main(argv: list[str]) -> int:
    if not argv:
        print(__doc__)
        return 2

    command, args = argv[0], argv[1:]

    with httpx.Client(base_url=BASE_URL, timeout=10.0) as client:
        if command == "text" and args:
            resp = client.post("/push", json={"text": args[0], **_duration(args[1:])})
        elif command == "bitmap" and args:
            data = base64.b64encode(Path(args[0]).read_bytes()).decode("ascii")
            resp = client.post("/push-bitmap", json={"bitmap": data, **_duration(args[1:])})
        elif command == "status":
            resp = client.get("/status")
        elif command in ("mic", "copilot"):
            body = {"enabled": args[0] == "on"} if args else {}
            resp = client.post(f"/{command}", json=body)
        else:
            print(__doc__)
            return 2

    print(json.dumps(resp.json(), indent=2))
    return 0 if resp.is_success else 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
