"""Design generation service: brief in, garment design document and preview images out."""
import os
import sys
from pathlib import Path

__version__ = "0.1.0"


def _load_dotenv_if_needed(path: str = ".env") -> None:
    # Tests run without .env so no provider credential leaks in
    if os.getenv("PYTEST_CURRENT_TEST") or "pytest" in sys.modules:
        return
    env_path = Path(path)
    if not env_path.is_file():
        return
    try:
        lines = env_path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for line in lines:
        s = line.strip()
        if s.startswith("export "):
            s = s[len("export "):].lstrip()
        if not s or s.startswith("#") or "=" not in s:
            continue
        key, val = (part.strip() for part in s.split("=", 1))
        if len(val) >= 2 and val[0] == val[-1] and val[0] in ("'", '"'):
            val = val[1:-1]
        # Real environment wins over .env
        if key and key not in os.environ:
            os.environ[key] = val


_load_dotenv_if_needed()
