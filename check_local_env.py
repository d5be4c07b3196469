"""Validate the local Iris Live environment.

Usage:
  set -a
  source .env
  set +a
  python3 check_local_env.py
"""

from __future__ import annotations

import importlib
import os
import sys
from pathlib import Path


ENV_PATH = Path(__file__).resolve().parent / ".env"
REQUIRED_MODULES = (
    ("websockets", "websockets"),
    ("fastapi", "fastapi"),
    ("pydantic_settings", "pydantic-settings"),
    ("numpy", "numpy"),
    ("PIL", "pillow"),
)


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if value.startswith(("'", '"')) and value.endswith(("'", '"')) and len(value) >= 2:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def check_modules(errors: list[str]) -> None:
    for module_name, dist_name in REQUIRED_MODULES:
        try:
            importlib.import_module(module_name)
        except ImportError:
            errors.append(f"{module_name} is not importable (pip install {dist_name})")


def check_audio(errors: list[str], warnings: list[str]) -> None:
    try:
        import sounddevice as sd
    except (ImportError, OSError) as exc:
        errors.append(f"sounddevice is unavailable: {exc}")
        return
    rate = int(os.getenv("IRIS_SAMPLE_RATE_HZ", "24000") or 24000)
    for kind, env_name in (("input", "IRIS_INPUT_DEVICE"), ("output", "IRIS_OUTPUT_DEVICE")):
        device = os.getenv(env_name, "").strip() or None
        try:
            if kind == "input":
                sd.check_input_settings(device=device, channels=1, dtype="int16", samplerate=rate)
            else:
                sd.check_output_settings(device=device, channels=1, dtype="int16", samplerate=rate)
        except Exception as exc:
            warnings.append(f"Audio {kind} device {device or 'default'} rejects {rate} Hz mono int16: {exc}")


def check_camera(warnings: list[str]) -> None:
    try:
        import cv2
    except ImportError as exc:
        warnings.append(f"OpenCV is unavailable, the camera pipeline will not start: {exc}")
        return
    index = int(os.getenv("IRIS_CAMERA_INDEX", "0") or 0)
    capture = cv2.VideoCapture(index)
    try:
        if not capture.isOpened():
            warnings.append(f"No camera found at IRIS_CAMERA_INDEX={index}")
    finally:
        capture.release()


def main() -> int:
    load_env_file(ENV_PATH)

    py_version = sys.version_info
    if py_version < (3, 10):
        print(
            "Unsupported Python version: "
            f"{py_version.major}.{py_version.minor}. "
            "Use Python 3.10 or newer for this repo."
        )
        return 1

    errors: list[str] = []
    warnings: list[str] = []

    if not os.getenv("IRIS_API_KEY", "").strip():
        warnings.append("IRIS_API_KEY is missing; the host must pass api_key when it connects")

    model_id = os.getenv("IRIS_MODEL_ID", "").strip()
    if model_id and not model_id.startswith("models/"):
        warnings.append(f"IRIS_MODEL_ID will be sent as models/{model_id}")

    check_modules(errors)
    check_audio(errors, warnings)
    check_camera(warnings)

    print(f"Loaded env file: {ENV_PATH}")
    if errors:
        print("\nErrors:")
        for item in errors:
            print(f"  - {item}")
    if warnings:
        print("\nWarnings:")
        for item in warnings:
            print(f"  - {item}")

    if errors:
        print("\nLocal environment is not ready.")
        return 1

    print("\nLocal environment looks ready.")
    print("Next:")
    print("  uvicorn iris_live.main:app --port 8765")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
