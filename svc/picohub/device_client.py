from __future__ import annotations
import argparse
import logging
import random
import time
from typing import Any, Dict, Optional, Tuple

import requests

logger = logging.getLogger(__name__)


class DeviceClient:
    """
    Talks to the hub the way a Pico node does: push readings, poll the mailbox.

    Handy on the bench when no hardware is connected.
    """

    def __init__(self, base_url: str, device_id: str, timeout_s: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self.timeout_s = timeout_s
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    def send_reading(self, temp: float, fan: float = 0.0, mode: Optional[str] = None) -> bool:
        """POST one reading. Returns True when the hub stored it."""
        payload: Dict[str, Any] = {"device_id": self.device_id, "temp": temp, "fan": fan}
        if mode is not None:
            payload["mode"] = mode
        try:
            response = self.session.post(f"{self.base_url}/api/ingest", json=payload, timeout=self.timeout_s)
        except requests.exceptions.RequestException as e:
            logger.error(f"Network error sending reading: {e}")
            return False

        if response.status_code == 201:
            return True
        logger.error(f"Ingest rejected: {response.status_code} - {response.text}")
        return False

    def poll_command(self, peek: bool = False) -> Optional[Dict[str, Any]]:
        """
        Fetch the oldest queued command, or None when the mailbox is empty.

        Raises requests.HTTPError on any status other than 200/204.
        """
        params = {"peek": "1"} if peek else None
        response = self.session.get(
            f"{self.base_url}/api/device-message/{self.device_id}",
            params=params,
            timeout=self.timeout_s,
        )
        if response.status_code == 204:
            return None
        response.raise_for_status()
        return response.json()

    def queue_command(self, params: Any) -> int:
        """Queue a command for this device, as the dashboard would. Returns its id."""
        response = self.session.post(
            f"{self.base_url}/api/device-message",
            json={"device_id": self.device_id, "params": params},
            timeout=self.timeout_s,
        )
        response.raise_for_status()
        return response.json()["id"]


def apply_command(params: Any, fan: float, mode: str) -> Tuple[float, str]:
    """Fan and mode after a command; bad values are logged and ignored."""
    if not isinstance(params, dict):
        logger.warning(f"Ignoring command params that are not an object: {params!r}")
        return fan, mode

    if "fan" in params:
        try:
            fan = float(params["fan"])
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric fan value: {params['fan']!r}")

    new_mode = params.get("mode", mode)
    if isinstance(new_mode, str):
        mode = new_mode
    else:
        logger.warning(f"Ignoring non-text mode value: {new_mode!r}")
    return fan, mode


def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(description="Simulate a Pico node against the hub")
    parser.add_argument("--url", default="http://localhost:3000")
    parser.add_argument("--device-id", default="pico-temp-001")
    parser.add_argument("--interval", type=float, default=5.0, help="seconds between readings")
    parser.add_argument("--count", type=int, default=0, help="readings to send, 0 runs forever")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(name)s: %(message)s')
    client = DeviceClient(args.url, args.device_id)

    temp = 24.0
    fan = 0.0
    mode = "AUTO"
    sent = 0
    while args.count == 0 or sent < args.count:
        temp = round(temp + random.uniform(-0.5, 0.5), 2)
        if client.send_reading(temp, fan, mode):
            logger.info(f"Sent {temp}°C fan={fan} mode={mode}")
        sent += 1

        try:
            cmd = client.poll_command()
        except requests.exceptions.RequestException as e:
            logger.error(f"Mailbox poll failed: {e}")
            cmd = None
        if cmd is not None:
            logger.info(f"Received command {cmd['id']}: {cmd['params']}")
            fan, mode = apply_command(cmd["params"], fan, mode)

        time.sleep(args.interval)


if __name__ == "__main__":
    main()
