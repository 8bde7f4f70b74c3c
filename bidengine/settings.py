import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from pydantic import BaseModel, Field
import tomllib
import os

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s -- %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class DatabaseCfg(BaseModel):
    url: str = "sqlite:///bidengine.sqlite"
    echo: bool = False


class BiddingCfg(BaseModel):
    lock_timeout_seconds: float = Field(default=5.0, gt=0)


class SweeperCfg(BaseModel):
    enabled: bool = True
    interval_seconds: int = Field(default=60, ge=1)
    misfire_grace_seconds: int = 30


class LoggingCfg(BaseModel):
    level: str = "INFO"
    file: str = ""


class Settings(BaseModel):
    database: DatabaseCfg = DatabaseCfg()
    bidding: BiddingCfg = BiddingCfg()
    sweeper: SweeperCfg = SweeperCfg()
    logging: LoggingCfg = LoggingCfg()


def load_settings() -> Settings:
    cfg_path = Path(os.getenv("BIDENGINE_CONFIG", "bidengine.toml"))
    raw = tomllib.loads(cfg_path.read_text()) if cfg_path.exists() else {}
    settings = Settings.model_validate(raw)
    level = os.getenv("BIDENGINE_LOG_LEVEL")
    if level:
        settings.logging.level = level.upper()
    return settings


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.logging.level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    root = logging.getLogger()
    root.setLevel(level)
    if not settings.logging.file:
        return
    path = Path(settings.logging.file).resolve()
    for h in root.handlers:
        if isinstance(h, RotatingFileHandler) and Path(h.baseFilename) == path:
            return
    file_handler = RotatingFileHandler(
        path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root.addHandler(file_handler)
