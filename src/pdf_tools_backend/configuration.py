from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import ServiceSettings

_HERE = Path(__file__).resolve()
CONFIG_PATH = _HERE.parent / "config" / "config.yaml"

if not CONFIG_PATH.exists():  # pragma: no cover - fail fast in broken installs
    raise FileNotFoundError(f"Default config.yaml could not be located at {CONFIG_PATH}")


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    return OmegaConf.load(CONFIG_PATH)


def get_default_config_container(resolve: bool = False) -> Dict[str, Any]:
    config = _load_default_config()
    return OmegaConf.to_container(config, resolve=resolve, enum_to_str=True)  # type: ignore[return-value]


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Merge overrides onto the packaged defaults.

    The defaults are struct-locked, so an override naming a key that does not
    exist in config.yaml raises instead of being silently ignored.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    cli_config = OmegaConf.create(overrides or {})
    merged = DictConfig(OmegaConf.merge(base, cli_config))
    return merged


def load_settings(overrides: Optional[Dict[str, Any]] = None, env_file: Optional[Path] = None) -> ServiceSettings:
    """
    Build the immutable service settings.

    Environment variables (optionally from a .env file) are read at this point
    only; the returned settings never change for the lifetime of the process.
    The storage root is made absolute so every component sees the same path.
    """
    load_dotenv(dotenv_path=env_file, override=False)
    runtime_config = make_runtime_config(overrides)
    resolved = OmegaConf.to_container(runtime_config, resolve=True, enum_to_str=True)
    storage = dict(resolved["storage"])  # type: ignore[index]
    storage["root"] = Path(str(storage["root"])).expanduser().resolve()
    resolved["storage"] = storage  # type: ignore[index]
    return ServiceSettings.model_validate(resolved)
