import json
import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict

from dotenv import load_dotenv


LOGGER = logging.getLogger("peer_detect.config_store")

ROOT_DIR = Path(__file__).resolve().parent.parent
SETTINGS_DIR = ROOT_DIR / "settings"
DOTENV_PATH = ROOT_DIR / ".env"
ENV_CONFIG_PATH = "PEER_DETECT_CONFIG_PATH"

DEFAULT_RUNTIME_CONFIG: Dict[str, Any] = {
    "max_queue_size": 3,
    "score_threshold": 0.5,
    "input_width": 300,
    "input_height": 300,
    "channel_order": "RGB",
    "mean_values": [127.5, 127.5, 127.5],
    "standard_scale": 127.5,
    "letterbox": False,
    "model_path": "models/mobilenet-ssd.onnx",
    "max_retries": 3,
    "monitor_interval": 1.0,
    "load_timeout": 5.0,
}

_CONFIG_LOCK = Lock()


def config_path() -> Path:
    override = os.environ.get(ENV_CONFIG_PATH, "").strip()
    if override:
        return Path(override)
    return SETTINGS_DIR / "peer_detect_config.json"


def load_environment() -> bool:
    loaded = load_dotenv(DOTENV_PATH)
    if loaded:
        LOGGER.info("Loaded environment variables from %s", DOTENV_PATH)
    else:
        LOGGER.debug("No .env file found at %s", DOTENV_PATH)
    return loaded


def _coerce(key: str, value: Any) -> Any:
    default = DEFAULT_RUNTIME_CONFIG[key]
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, list):
        values = [float(v) for v in value]
        if len(values) != len(default):
            raise ValueError(f"{key} must have {len(default)} entries")
        return values
    if key == "channel_order":
        order = str(value).strip().upper()
        if order not in ("RGB", "BGR"):
            raise ValueError("channel_order must be RGB or BGR")
        return order
    return str(value)


def normalize_runtime_config(values: Dict[str, Any]) -> Dict[str, Any]:
    """Keep known keys, coercing each to the type of its default."""

    normalized: Dict[str, Any] = {}
    for key, value in values.items():
        if key not in DEFAULT_RUNTIME_CONFIG or value is None:
            continue
        try:
            normalized[key] = _coerce(key, value)
        except (TypeError, ValueError) as exc:
            LOGGER.error("Ignoring invalid runtime config value %s=%r: %s", key, value, exc)
    return normalized


def load_runtime_config() -> Dict[str, Any]:
    path = config_path()
    data: Dict[str, Any] = {}
    with _CONFIG_LOCK:
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fp:
                    loaded = json.load(fp)
                    if isinstance(loaded, dict):
                        data = normalize_runtime_config(loaded)
            except Exception as exc:  # pragma: no cover - just log and continue
                LOGGER.error("Failed to load runtime config: %s", exc)
    merged = json.loads(json.dumps(DEFAULT_RUNTIME_CONFIG))
    merged.update(data)
    return merged


def save_runtime_config(config: Dict[str, Any]) -> None:
    path = config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with _CONFIG_LOCK:
        try:
            with open(path, "w", encoding="utf-8") as fp:
                json.dump(config, fp, indent=2)
        except Exception as exc:  # pragma: no cover - persistence failure
            LOGGER.error("Failed to save runtime config: %s", exc)
