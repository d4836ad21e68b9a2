# scripts/test/test_device_conn.py
"""
Tests connectivity to all configured devices by hitting their ISAPI deviceInfo endpoint.
Usage: python scripts/test/test_device_conn.py
       python scripts/test/test_device_conn.py --device-id <id>
"""

import sys
import os
import argparse
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

import requests
from requests.auth import HTTPDigestAuth

from bridge.config import settings
from bridge.schemas.bridge_config import DeviceConfig
from bridge.services.config_store import ConfigStore
from bridge.utils.xml_parser import safe_parse_xml, find_text


def test_device(device: DeviceConfig) -> dict:
    url = f"http://{device.host}/ISAPI/System/deviceInfo"
    try:
        resp = requests.get(url, auth=HTTPDigestAuth(device.username, device.password), timeout=5)
        if resp.status_code == 200:
            root = safe_parse_xml(resp.content)
            if root is None:
                return {"status": "✅ online", "model": "N/A", "serial": "N/A", "firmware": "N/A"}
            return {
                "status": "✅ online",
                "model": find_text(root, "model") or "N/A",
                "serial": find_text(root, "serialNumber") or "N/A",
                "firmware": find_text(root, "firmwareVersion") or "N/A",
            }
        elif resp.status_code == 401:
            return {"status": "❌ auth_failed", "hint": "Wrong username or password"}
        else:
            return {"status": f"❌ http_{resp.status_code}"}

    except requests.exceptions.ConnectTimeout:
        return {"status": "❌ timeout", "hint": "Device unreachable — check IP and network"}
    except requests.exceptions.ConnectionError:
        return {"status": "❌ connection_refused", "hint": "No device at this IP"}
    except requests.exceptions.RequestException as e:
        return {"status": f"❌ error: {e}"}


def test_stream(device: DeviceConfig) -> str:
    """Open the alertStream briefly and report whether the device answers."""
    url = f"http://{device.host}/ISAPI/Event/notification/alertStream"
    try:
        with requests.get(url, auth=HTTPDigestAuth(device.username, device.password),
                          stream=True, timeout=(5, 5)) as resp:
            if resp.status_code == 200:
                return f"✅ alertStream open ({resp.headers.get('Content-Type', 'unknown type')})"
            return f"❌ alertStream http_{resp.status_code}"
    except requests.exceptions.RequestException as e:
        return f"❌ alertStream {e.__class__.__name__}"


def main():
    parser = argparse.ArgumentParser(description="Test device connectivity")
    parser.add_argument("--config", default=settings.config_path)
    parser.add_argument("--device-id", help="only test this device")
    args = parser.parse_args()

    devices = ConfigStore(args.config).load().devices
    if args.device_id:
        devices = [d for d in devices if d.device_id == args.device_id]

    print(f"\n🔍 Testing {len(devices)} device(s)...\n")
    online = 0
    for device in devices:
        if not device.host:
            print(f"  {device.display_name:<24} ⚠️  no host configured\n")
            continue
        result = test_device(device)
        print(f"  {device.display_name:<24} {device.host:<16} {result['status']}")
        if "model" in result:
            online += 1
            print(f"      model={result['model']} serial={result['serial']} firmware={result['firmware']}")
            print(f"      {test_stream(device)}")
        elif "hint" in result:
            print(f"      hint: {result['hint']}")
        print()

    print(f"{'✅' if online == len(devices) else '⚠️ '} {online}/{len(devices)} device(s) online")


if __name__ == "__main__":
    main()
