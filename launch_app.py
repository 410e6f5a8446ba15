from __future__ import annotations

import hashlib
import os
import subprocess
import sys
import venv
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent
VENV_DIR = PROJECT_ROOT / ".venv"
REQUIREMENTS_FILE = PROJECT_ROOT / "app" / "requirements.txt"
REQUIREMENTS_MARKER = VENV_DIR / ".requirements.applied"
APP_ENTRYPOINT = PROJECT_ROOT / "app" / "main.py"


def venv_python() -> Path:
    if os.name == "nt":
        return VENV_DIR / "Scripts" / "python.exe"
    return VENV_DIR / "bin" / "python"


def pip(*args: str) -> None:
    subprocess.check_call([str(venv_python()), "-m", "pip", *args])


def ensure_environment() -> None:
    """Create the venv on first run and reinstall whenever requirements.txt changes."""
    if not venv_python().exists():
        print(f"[launcher] Creating virtual environment at {VENV_DIR}...")
        venv.EnvBuilder(with_pip=True).create(VENV_DIR)

    if not REQUIREMENTS_FILE.exists():
        raise FileNotFoundError(f"Requirements file not found: {REQUIREMENTS_FILE}")
    signature = hashlib.sha256(REQUIREMENTS_FILE.read_bytes()).hexdigest()
    if REQUIREMENTS_MARKER.exists() and REQUIREMENTS_MARKER.read_text().strip() == signature:
        print("[launcher] Dependencies satisfied.")
        return

    print(f"[launcher] Installing dependencies from {REQUIREMENTS_FILE}...")
    pip("install", "--upgrade", "pip")
    pip("install", "-r", str(REQUIREMENTS_FILE))
    REQUIREMENTS_MARKER.write_text(signature)


def launch_app() -> int:
    ensure_environment()
    if not APP_ENTRYPOINT.exists():
        raise FileNotFoundError(f"App entrypoint not found: {APP_ENTRYPOINT}")
    data_dir = os.environ.get("ROTA_DATA_DIR")
    if data_dir:
        print(f"[launcher] Using data directory {data_dir}")
    print("[launcher] Starting rota...")
    return subprocess.call([str(venv_python()), str(APP_ENTRYPOINT)])


if __name__ == "__main__":
    try:
        exit_code = launch_app()
    except subprocess.CalledProcessError as exc:
        print(f"[launcher] Command failed with exit code {exc.returncode}", file=sys.stderr)
        sys.exit(exc.returncode)
    except Exception as exc:
        print(f"[launcher] {exc}", file=sys.stderr)
        sys.exit(1)
    else:
        sys.exit(exit_code)
