import json
from pathlib import Path

from slidecraft.config import settings


def deck_content_path(request_id: str) -> Path:
    folder = settings.storage_root / "decks"
    folder.mkdir(parents=True, exist_ok=True)
    return folder / f"{request_id}.json"


def write_json(path: Path, payload: dict | list) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    tmp_path.replace(path)
