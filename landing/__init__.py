import os
from pathlib import Path

__version__ = "0.3.0"


def _load_dotenv_if_needed() -> None:
    # Tests configure everything explicitly; never read a developer .env under pytest
    if os.getenv("PYTEST_CURRENT_TEST"):
        return
    env_path = Path(os.getenv("LANDING_ENV_FILE", ".env"))
    if not env_path.exists():
        return
    try:
        text = env_path.read_text(encoding="utf-8")
    except OSError:
        return
    for line in text.splitlines():
        s = line.strip()
        if not s or s.startswith("#") or "=" not in s:
            continue
        key, val = s.split("=", 1)
        key = key.strip()
        val = val.strip()
        if (val.startswith('"') and val.endswith('"')) or (val.startswith("'") and val.endswith("'")):
            val = val[1:-1]
        # Real environment wins over the file
        if key and key not in os.environ:
            os.environ[key] = val


_load_dotenv_if_needed()
