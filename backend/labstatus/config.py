"""Configuration — reads all settings from environment variables."""

import logging
import os

from dotenv import load_dotenv

from labstatus.env_utils import env_float, env_int, get_env

logger = logging.getLogger("labstatus.config")

if not load_dotenv():
    logger.warning("no .env file found")

# Home Assistant
HOMEASSISTANT_URL: str = os.getenv("HOMEASSISTANT_URL", "http://10.20.30.97")
HOMEASSISTANT_ENTITY_ID: str = os.getenv("HOMEASSISTANT_ENTITY_ID", "input_boolean.lab_is_on")
HOMEASSISTANT_TOKEN: str = get_env("HOMEASSISTANT_TOKEN", "")

REQUEST_TIMEOUT_SECONDS: float = env_float("REQUEST_TIMEOUT_SECONDS", 4.0)

# Server
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = env_int("PORT", 3333)
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
