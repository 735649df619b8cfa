from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Dict

import bittensor as bt

from yumacore.errors import SnapshotError
from yumacore.storage.state import SubnetState
from yumacore.storage.store import InMemorySubnetStore

SNAPSHOT_VERSION = 1


def _compute_snapshot_hash(subnets: Dict[str, Any]) -> str:
    payload = json.dumps(subnets, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def dump_snapshot(store: InMemorySubnetStore) -> Dict[str, Any]:
    subnets = {str(subnet_id): store.state(subnet_id).to_dict() for subnet_id in store.subnet_ids()}
    return {
        "version": SNAPSHOT_VERSION,
        "subnets": subnets,
        "snapshot_hash": _compute_snapshot_hash(subnets),
    }


def save_snapshot(store: InMemorySubnetStore, output_path: Path) -> str:
    """Write every subnet in ``store`` to ``output_path`` and return the content hash."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    payload = dump_snapshot(store)
    output_path.write_text(json.dumps(payload, ensure_ascii=True), encoding="utf-8")
    bt.logging.info(
        f"Saved subnet snapshot | subnets={len(payload['subnets'])} "
        f"hash={payload['snapshot_hash'][:12]} path={output_path}"
    )
    return payload["snapshot_hash"]


def load_snapshot(path: Path) -> InMemorySubnetStore:
    path = Path(path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise SnapshotError(f"Cannot read snapshot {path}: {e}") from e

    if not isinstance(payload, dict) or payload.get("version") != SNAPSHOT_VERSION:
        raise SnapshotError(f"Unsupported snapshot version in {path}")

    subnets = payload.get("subnets", {})
    snapshot_hash = _compute_snapshot_hash(subnets)
    stored_hash = payload.get("snapshot_hash")
    if not isinstance(stored_hash, str):
        raise SnapshotError(f"Snapshot {path} carries no content hash")
    if stored_hash != snapshot_hash:
        raise SnapshotError(f"Snapshot hash mismatch ({stored_hash[:12]} != {snapshot_hash[:12]})")

    try:
        states = {int(subnet_id): SubnetState.from_dict(state) for subnet_id, state in subnets.items()}
        store = InMemorySubnetStore(states)
    except (KeyError, TypeError, ValueError) as e:
        raise SnapshotError(f"Malformed subnet state in {path}: {e}") from e

    bt.logging.info(f"Loaded subnet snapshot from disk: {path} | subnets={len(states)} hash={snapshot_hash[:12]}")
    return store
