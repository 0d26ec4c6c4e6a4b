import os

from dotenv import load_dotenv


def _env_flag(name, default="false"):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Connection defaults read from the environment (and a local .env file)."""

    def __init__(self):
        load_dotenv()

        self.host = os.getenv("ESX_HOST")
        self.user = os.getenv("ESX_USER", "root")
        self.password = os.getenv("ESX_PASSWORD")
        self.datastore = os.getenv("ESX_DATASTORE")
        # Empty means "register on the host we connect to"
        self.target_host = os.getenv("ESX_TARGET_HOST") or None
        self.port = int(os.getenv("ESX_PORT", "443"))
        self.ignore_cert_errors = _env_flag("ESX_IGNORE_CERT_ERRORS")
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
