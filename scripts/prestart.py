from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, Literal

from digit_snap.config import Settings
from digit_snap.inference.manifest import ModelManifest
from digit_snap.logging import get_logger, init_logging

_ARTIFACT_FILES: Final[tuple[str, ...]] = ("model.pt", "manifest.json")


@dataclass(frozen=True)
class SeedPlan:
    seed_root: Path
    model_dir: Path
    model_id: str


SeedPolicy = Literal["if_missing", "if_newer", "always", "never"]


def _read_manifest(path: Path) -> ModelManifest | None:
    try:
        return ModelManifest.from_path(path)
    except (OSError, ValueError) as exc:
        get_logger().info("prestart_manifest_read_failed path=%s error=%s", path.as_posix(), exc)
        return None


def _has_artifact(d: Path) -> bool:
    return all((d / name).exists() for name in _ARTIFACT_FILES)


def _copy_artifact(src: Path, dst: Path) -> None:
    dst.mkdir(parents=True, exist_ok=True)
    for name in _ARTIFACT_FILES:
        shutil.copy2(src / name, dst / name)


def _backup_existing(dest: Path, backup_root: Path) -> Path:
    ts = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    out_dir = backup_root / f"{dest.name}-{ts}"
    out_dir.mkdir(parents=True, exist_ok=True)
    for name in _ARTIFACT_FILES:
        if (dest / name).exists():
            shutil.copy2(dest / name, out_dir / name)
    return out_dir


def apply_seed(plan: SeedPlan, *, policy: SeedPolicy, backup: bool, backup_dir: Path) -> str:
    """Install the seeded model artifact into the model directory.

    Returns an action string describing what happened.
    """
    dest = plan.model_dir / plan.model_id
    seed = plan.seed_root / plan.model_id

    if policy == "never":
        return "skipped_never"
    if not _has_artifact(seed):
        return "skipped_no_seed"
    if not _has_artifact(dest):
        _copy_artifact(seed, dest)
        return "seeded_missing"
    if policy == "if_missing":
        return "skipped_present"

    seed_man = _read_manifest(seed / "manifest.json")
    dest_man = _read_manifest(dest / "manifest.json")
    if seed_man is None or dest_man is None:
        return "skipped_compare_failed"
    if policy == "if_newer" and not seed_man.created_at > dest_man.created_at:
        return "skipped_not_newer"

    if backup:
        _backup_existing(dest, backup_dir)
    _copy_artifact(seed, dest)
    return "seeded_updated"


def seed_if_needed(plan: SeedPlan) -> bool:
    act = apply_seed(plan, policy="if_missing", backup=False, backup_dir=Path("/tmp"))
    return act == "seeded_missing"


def _env_policy(val: str | None) -> SeedPolicy:
    if val == "always":
        return "always"
    if val == "if_newer":
        return "if_newer"
    if val == "never":
        return "never"
    return "if_missing"


def _env_truthy(v: str | None) -> bool:
    if v is None:
        return False
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


def main() -> None:
    init_logging()
    settings = Settings.load()
    plan = SeedPlan(
        seed_root=Path(os.getenv("PRESTART_SEED_ROOT", "/seed/digits/models")),
        model_dir=settings.digits.model_dir,
        model_id=settings.digits.active_model,
    )
    policy = _env_policy(os.getenv("PRESTART_SEED_POLICY"))
    backup_enabled = _env_truthy(os.getenv("PRESTART_SEED_BACKUP", "1"))
    backup_dir = Path(os.getenv("PRESTART_BACKUP_DIR", "/data/backups"))

    action = apply_seed(plan, policy=policy, backup=backup_enabled, backup_dir=backup_dir)
    get_logger().info(
        "prestart seed_policy=%s action=%s model_id=%s", policy, action, plan.model_id
    )


if __name__ == "__main__":  # pragma: no cover - used at runtime
    main()
