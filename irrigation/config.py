"""
Runtime configuration for the irrigation engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List
import json
import os


# Default number of irrigation zones. Can be overridden via env variable.
DEFAULT_ZONE_COUNT = 4


def default_zone_ids() -> List[str]:
    return [f"zone_{i}" for i in range(1, DEFAULT_ZONE_COUNT + 1)]


@dataclass
class Settings:
    """
    Simple settings object populated from environment variables.
    """

    database_path: Path = Path(
        os.getenv("IRRIGATION_DB_PATH", "data/irrigation.sqlite3")
    )
    hardware_mode: str = os.getenv("IRRIGATION_HARDWARE_MODE", "mock")
    zone_ids: List[str] = field(
        default_factory=lambda: os.getenv("IRRIGATION_ZONE_IDS", "")
    )
    zone_config_path: Path = Path(
        os.getenv("IRRIGATION_ZONE_CONFIG", "config/zones.json")
    )
    zone_name_map: Dict[str, str] = field(default_factory=dict)
    time_zone: str = os.getenv("IRRIGATION_TIME_ZONE", "Asia/Jakarta")

    # Upper bound for a single valve command before the zone is flagged as errored.
    valve_timeout_seconds: float = float(os.getenv("IRRIGATION_VALVE_TIMEOUT", "5"))
    # Sensor readings older than this are treated as unavailable.
    sensor_max_age_seconds: float = float(
        os.getenv("IRRIGATION_SENSOR_MAX_AGE", "900")
    )
    quick_water_minutes: int = int(os.getenv("IRRIGATION_QUICK_WATER_MINUTES", "5"))
    # Moisture-triggered watering; off unless enabled here or through the API.
    auto_water_enabled: bool = os.getenv("IRRIGATION_AUTO_WATER", "0") == "1"
    auto_water_threshold: float = float(os.getenv("IRRIGATION_AUTO_THRESHOLD", "30"))
    auto_water_minutes: int = int(os.getenv("IRRIGATION_AUTO_MINUTES", "10"))
    auto_check_minutes: float = float(os.getenv("IRRIGATION_AUTO_CHECK_MINUTES", "5"))
    # Wall-clock length of one schedule minute. Lower it to simulate runs quickly.
    minute_seconds: float = float(os.getenv("IRRIGATION_MINUTE_SECONDS", "60"))

    def __post_init__(self) -> None:
        # Resolve paths relative to repo root (parent of the irrigation package)
        repo_root = Path(__file__).parent.parent

        if not self.database_path.is_absolute():
            self.database_path = repo_root / self.database_path

        if not self.zone_config_path.is_absolute():
            self.zone_config_path = repo_root / self.zone_config_path

        if not self.zone_ids:
            # IRRIGATION_ZONE_IDS not provided, fall back to zone_1..zone_4
            self.zone_ids = default_zone_ids()
        elif isinstance(self.zone_ids, str):
            self.zone_ids = [
                zone.strip() for zone in self.zone_ids.split(",") if zone.strip()
            ]

        if not self.database_path.parent.exists():
            # Creates ./data/ if we are using the default path
            self.database_path.parent.mkdir(parents=True, exist_ok=True)

        if not self.zone_config_path.parent.exists():
            self.zone_config_path.parent.mkdir(parents=True, exist_ok=True)

        if not self.zone_name_map:
            self.zone_name_map = self._load_zone_names()

    def _load_zone_names(self) -> Dict[str, str]:
        """
        Load zone-to-display-name mapping from JSON file. If the file is missing,
        synthesize a default mapping (zone_1 -> Zone 1, etc.) and write it.
        """
        mapping: Dict[str, str] = {}
        if self.zone_config_path.exists():
            try:
                with self.zone_config_path.open("r", encoding="utf-8") as fh:
                    raw = json.load(fh)
                    if isinstance(raw, dict):
                        mapping = {k: str(v) for k, v in raw.items()}
            except (json.JSONDecodeError, OSError):
                mapping = {}

        if not mapping:
            mapping = {
                zone: f"Zone {zone.rsplit('_', 1)[-1]}" for zone in self.zone_ids
            }
            try:
                with self.zone_config_path.open("w", encoding="utf-8") as fh:
                    json.dump(mapping, fh, indent=2)
            except OSError:
                pass

        for zone in self.zone_ids:
            mapping.setdefault(zone, zone)
        return mapping


# Single global settings object imported by other modules.
settings = Settings()
