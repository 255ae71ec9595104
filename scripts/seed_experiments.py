#!/usr/bin/env python3
"""
Seed the experiment store with sample experiments.

Reads scripts/sample_experiments.yaml and inserts every experiment into the
configured store (EXPTRACK_DATA_DIR or the platform data directory).
Creation dates are spread over the last days so the trend view has data.

Usage:
    python scripts/seed_experiments.py [--clear] [--spread-days N] [--file PATH]
"""

import argparse
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import yaml
from pydantic import ValidationError

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.app_config import get_settings
from api.schemas import ExperimentCreate
from api.store import ExperimentStore

DEFAULT_FILE = Path(__file__).parent / "sample_experiments.yaml"


def load_samples(path: Path) -> list:
    """Load and validate the sample experiments from a YAML file."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return [ExperimentCreate.model_validate(item) for item in data.get("experiments", [])]


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed the ExpTrack experiment store")
    parser.add_argument("--file", type=Path, default=DEFAULT_FILE, help="YAML file with sample experiments")
    parser.add_argument("--clear", action="store_true", help="Delete existing experiments first")
    parser.add_argument("--spread-days", type=int, default=14, help="Spread creation dates over N days (default: 14)")
    args = parser.parse_args()

    settings = get_settings()
    store = ExperimentStore(settings.store_path)
    print(f"Experiment store: {store.path}")

    try:
        samples = load_samples(args.file)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        print(f"FAIL - could not load {args.file}: {e}")
        return 1

    if args.clear:
        existing = store.all()
        for exp in existing:
            store.delete(exp.id)
        print(f"Cleared {len(existing)} existing experiments")

    now = datetime.now(timezone.utc)
    step = timedelta(days=args.spread_days) / max(len(samples), 1)
    created_at = [now - step * (len(samples) - i) for i in range(len(samples))]

    inserted = store.insert_many(samples, created_at=created_at)
    print(f"Inserted {len(inserted)} sample experiments:")
    for i, exp in enumerate(inserted, start=1):
        print(f"  {i}. {exp.name} ({exp.status})")

    return 0


if __name__ == "__main__":
    sys.exit(main())
