from __future__ import annotations

from pathlib import Path
from typing import Mapping


def load_prompt(prompt_path: Path) -> str:
    """Purpose: Load a prompt file as UTF-8 text and strip BOM if present.
    Inputs/Outputs: Input is a Path to the prompt file; output is the decoded string.
    Side Effects / State: None; reads the filesystem.
    Dependencies: Uses Path.read_text/read_bytes; used by prompt assembly.
    Failure Modes: UnicodeDecodeError triggers a tolerant decode that drops invalid bytes;
        a missing file raises FileNotFoundError.
    If Removed: The system instruction cannot be built and generation fails.
    Testing Notes: Validate BOM-stripping and fallback decoding on non-UTF8 files.
    """
    try:
        return prompt_path.read_text(encoding="utf-8").lstrip("\ufeff")
    except UnicodeDecodeError:
        raw = prompt_path.read_bytes()
        return raw.decode("utf-8", errors="ignore").lstrip("\ufeff")


def render_prompt(template: str, values: Mapping[str, object]) -> str:
    # Fill <<NAME>> placeholders; unknown placeholders are left untouched.
    rendered = template
    for key, value in values.items():
        rendered = rendered.replace(f"<<{key}>>", str(value))
    return rendered.strip()
