from .settings import EdgeServiceSettings, get_settings, reset_settings, update_settings

__all__ = ["EdgeServiceSettings", "get_settings", "reset_settings", "update_settings"]
