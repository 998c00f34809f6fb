#!/usr/bin/env python3
"""Cross-platform install script for botdock.

Usage:
    python install.py          # Production install
    python install.py --dev    # Development install (includes test tools)
"""

import os
import platform
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 11)
DATA_SUBDIRS = ("sessions", "deployments", "configs")
EXTERNAL_TOOLS = {
    "git": "cloning bot repositories",
    "node": "running bots and the pairing bridge",
    "npm": "installing bot dependencies",
}


def _check_python() -> None:
    if sys.version_info < MIN_PYTHON:
        sys.exit(
            f"Error: Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ is required. "
            f"You have {sys.version_info.major}.{sys.version_info.minor}."
        )
    print(f"Python {sys.version_info.major}.{sys.version_info.minor} detected. OK.")


def _install(project_dir: str, venv_dir: str, dev: bool) -> None:
    bin_dir = "Scripts" if platform.system() == "Windows" else "bin"
    pip = os.path.join(venv_dir, bin_dir, "pip")

    if not os.path.isdir(venv_dir):
        print("Creating virtual environment...")
        subprocess.check_call([sys.executable, "-m", "venv", venv_dir])
    else:
        print("Virtual environment already exists.")

    print("Upgrading pip...")
    subprocess.check_call([pip, "install", "--upgrade", "pip"])

    target = ["-e", ".[dev]"] if dev else ["."]
    print(f"Installing botdock{' in development mode' if dev else ''}...")
    subprocess.check_call([pip, "install", *target], cwd=project_dir)


def _check_tools() -> list[str]:
    """Return the external tools missing from PATH."""
    missing = []
    for tool, purpose in EXTERNAL_TOOLS.items():
        if shutil.which(tool):
            print(f"{tool} found.")
        else:
            print(f"Warning: {tool} not found on PATH (needed for {purpose}).")
            missing.append(tool)
    return missing


def _prepare_data(project_dir: str) -> None:
    data_dir = os.path.join(project_dir, "data")
    for sub in DATA_SUBDIRS:
        os.makedirs(os.path.join(data_dir, sub), exist_ok=True)
    print(f"Data directories ready under {data_dir}")


def _copy_examples(project_dir: str) -> None:
    for src, dst in [("config.example.yaml", "config.yaml"), (".env.example", ".env")]:
        src_path = os.path.join(project_dir, src)
        dst_path = os.path.join(project_dir, dst)
        if os.path.exists(dst_path):
            print(f"{dst} already exists, skipping.")
        elif os.path.exists(src_path):
            shutil.copy(src_path, dst_path)
            print(f"Created {dst} from {src}")


def main() -> None:
    _check_python()

    dev = "--dev" in sys.argv
    project_dir = os.path.dirname(os.path.abspath(__file__))
    venv_dir = os.path.join(project_dir, ".venv")

    _install(project_dir, venv_dir, dev)
    missing = _check_tools()
    _prepare_data(project_dir)
    _copy_examples(project_dir)

    if platform.system() == "Windows":
        activate_cmd = r".\.venv\Scripts\activate"
    else:
        activate_cmd = "source .venv/bin/activate"

    print()
    print("=" * 50)
    print("  botdock installation complete!")
    if missing:
        print(f"  Missing tools: {', '.join(missing)}")
    print("=" * 50)
    print()
    print("Next steps:")
    print("  1. Edit config.yaml - paths, bot runtime, pairing bridge, monitor")
    print("  2. Edit .env - set BOT_PORT and PAIR_BRIDGE_SCRIPT")
    print("  3. Activate the virtual environment:")
    print(f"       {activate_cmd}")
    print("  4. Check the configuration:")
    print("       botdock config-check")
    print("  5. Start the API server and process monitor:")
    print("       botdock start")
    print()


if __name__ == "__main__":
    main()
