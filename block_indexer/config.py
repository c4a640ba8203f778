from typing import Any, Dict

from .util import load_json

DEFAULTS: Dict[str, Any] = {
    "rpc_http": None,
    "rpc_ws": None,
    "elastic_url": None,
    "elastic_sniff": False,
    "db_path": "./sync.db",
    "abi_dir": "./abis",
    "contracts": {},
    "start_block": 1,
    "batch_size": 10,
    "lag_threshold": 5,
    "poll_interval": 5,
    "call_timeout": 30,
    "max_attempts": 5,
    "backoff_base": 1,
    "max_backoff": 60,
    "max_workers": 8,
    "max_reorg_depth": 64,
    "reconnect_delay": 5,
    "refresh": False,
}

REQUIRED = ("rpc_http", "elastic_url")


def with_defaults(cfg: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(DEFAULTS)
    merged.update({key: value for key, value in cfg.items() if value is not None})
    return merged


def load_config(path: str) -> Dict[str, Any]:
    cfg = load_json(path)
    if not isinstance(cfg, dict):
        raise ValueError(f"{path}: config must be a JSON object")
    cfg = with_defaults(cfg)
    missing = [key for key in REQUIRED if not cfg.get(key)]
    if missing:
        raise ValueError(f"{path}: missing required config keys: {', '.join(missing)}")
    for key in ("batch_size", "max_attempts", "max_workers", "max_reorg_depth"):
        if int(cfg[key]) < 1:
            raise ValueError(f"{path}: {key} must be >= 1")
    return cfg


# Node and index requests time out before call_timeout; a retried call never
# overlaps a request still on the wire.
CLIENT_TIMEOUT_RATIO = 0.8


def client_timeout(cfg: Dict[str, Any]) -> float:
    return float(cfg.get("call_timeout", DEFAULTS["call_timeout"])) * CLIENT_TIMEOUT_RATIO
