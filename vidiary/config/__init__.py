from .config import StoreSettings, get_default_config, load_config, load_seed_data

__all__ = ["StoreSettings", "get_default_config", "load_config", "load_seed_data"]
