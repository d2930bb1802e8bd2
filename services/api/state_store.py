import json
import os
import tempfile
from pathlib import Path
from typing import Optional

MARKET_STATE_PATH = Path(__file__).with_name("market_state.json")


def market_state(path: Optional[Path] = None) -> dict:
    p = Path(path or MARKET_STATE_PATH)
    if p.exists():
        return json.loads(p.read_text())
    return {}


def market_save(st: dict, path: Optional[Path] = None) -> None:
    p = Path(path or MARKET_STATE_PATH)
    p.parent.mkdir(parents=True, exist_ok=True)
    # one temp file per write so concurrent savers never share it
    with tempfile.NamedTemporaryFile("w", dir=p.parent, prefix=p.name + ".", suffix=".tmp", delete=False) as f:
        json.dump(st, f, indent=2)
        tmp = f.name
    try:
        os.replace(tmp, p)
    except OSError:
        os.unlink(tmp)
        raise
