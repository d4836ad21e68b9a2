# scripts/setup/init_config.py
"""
Create or normalize the bridge config file and show device readiness.
Legacy upper-case keys and the old single-device layout are rewritten in the
current format.
Usage: python scripts/setup/init_config.py
       python scripts/setup/init_config.py --config C:\\ProgramData\\AccessBridge\\config.json
"""

import sys
import os
import argparse
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from bridge.config import settings
from bridge.services.config_store import ConfigStore


def main():
    parser = argparse.ArgumentParser(description="Initialize the bridge config file")
    parser.add_argument("--config", default=settings.config_path, help="config.json path")
    args = parser.parse_args()

    print("⚙️  Access Bridge Config Initialization")
    print("=" * 40)
    store = ConfigStore(args.config)
    existed = store.exists()
    cfg = store.ensure()
    print(f"{'✅ Normalized' if existed else '🆕 Created'}: {store.path}")
    print(f"   bridge_id   = {cfg.bridge_id}")
    print(f"   ingest_url  = {cfg.ingest_url or '(not set)'}")
    print(f"   start_mode  = {cfg.start_mode}")
    print(f"   devices dir = {store.devices_dir}")

    if not cfg.devices:
        print("\n⚠️  No devices configured — add one in the settings UI or enroll with a token.")
        return

    print(f"\n📋 Devices ({len(cfg.devices)}):")
    for i, device in enumerate(cfg.devices):
        missing = device.missing_fields()
        status = "✅ ready" if not missing else f"❌ missing {', '.join(missing)}"
        token = " (enroll token pending)" if device.enroll_token else ""
        print(f"  [{i}] {device.display_name:<24} {device.host or '-':<16} {status}{token}")


if __name__ == "__main__":
    main()
