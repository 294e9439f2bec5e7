from __future__ import annotations

import argparse
import asyncio
import json
import re
from dataclasses import asdict
from typing import Any

from offline_sync.config import Settings
from offline_sync.db import Database
from offline_sync.engine import OfflineSyncEngine
from offline_sync.services.connectivity import ConnectivityMonitor


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if re.search(r"token|authorization|password", str(k), re.IGNORECASE):
                out[k] = "***REDACTED***"
            else:
                out[k] = _redact(v)
        return out
    if isinstance(value, list):
        return [_redact(x) for x in value]
    return value


def _print_json(title: str, obj: Any) -> None:
    print(f"\n== {title} ==")
    print(json.dumps(_redact(obj), ensure_ascii=False, indent=2, default=str))


async def _probe(s: Settings, *, with_store: bool, reference_types: list[str]) -> int:
    engine = OfflineSyncEngine(s, database=Database(s.database_url))
    try:
        if with_store:
            enabled = await engine.start(monitor=False, auto_sync=False)
            print("\nSTORE:", "ok" if enabled else f"unavailable ({engine.disabled_reason})")

        # Without an open store the probe must not write metadata.
        monitor = (
            engine.connectivity
            if engine.sync_enabled
            else ConnectivityMonitor(
                engine.remote,
                probe_timeout_seconds=s.probe_timeout_seconds,
                good_latency_threshold_ms=s.good_latency_threshold_ms,
            )
        )
        state = await monitor.check()
        _print_json(
            "Probe",
            {
                "url": s.remote_base_url.rstrip("/") + "/" + s.probe_path.strip("/"),
                "is_online": state.is_online,
                "quality": state.quality,
                "latency_ms": None if state.latency_ms is None else round(state.latency_ms, 1),
            },
        )

        if with_store and engine.sync_enabled:
            stats = await engine.get_stats()
            _print_json("Queue", asdict(stats))
            for ref_type in reference_types:
                items = await engine.get_reference_data(ref_type, force=True)
                _print_json(f"Reference {ref_type}", {"count": len(items), "sample": items[:3]})
        return 0 if state.is_online else 1
    finally:
        await engine.stop()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Probe the remote authority with the current settings (read-only)."
    )
    parser.add_argument(
        "--no-store", action="store_true", help="skip opening the local store (probe only)"
    )
    parser.add_argument(
        "--reference",
        action="append",
        default=[],
        metavar="TYPE",
        help="also fetch a reference collection, may be repeated",
    )
    args = parser.parse_args()

    s = Settings()
    print("== Settings ==")
    print("DATABASE_URL:", s.database_url)
    print("REMOTE_BASE_URL:", s.remote_base_url)
    print("PROBE_PATH:", s.probe_path)
    print("PROBE_TIMEOUT_SECONDS:", s.probe_timeout_seconds)
    print("COLLECTION_TEMPLATE:", s.remote_collection_template)
    print("COLLECTION_PATHS:", s.remote_collection_paths_map())
    print("TERMINAL_STATUS_CODES:", sorted(s.terminal_status_codes_set()))

    raise SystemExit(
        asyncio.run(_probe(s, with_store=not args.no_store, reference_types=args.reference))
    )


if __name__ == "__main__":
    main()
