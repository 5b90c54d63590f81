#!/usr/bin/env python3
"""Check and compile the gettext catalogs under locales/ using polib.

    python scripts/i18n.py check     # syntax + every key used in code is translated
    python scripts/i18n.py compile   # write messages.mo next to each messages.po

Exit status is non-zero when a catalog cannot be parsed or a key is missing.
"""
from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path

import polib

ROOT = Path(__file__).resolve().parents[1]
SOURCE_DIRS = ("api", "application", "core", "domain", "infrastructure", "shared")

# dotted keys only; bare words like get("id") are dict lookups, not messages
KEY_PATTERNS = (
    re.compile(r"\bt\(\s*['\"]([a-z0-9_]+(?:\.[a-z0-9_]+)+)['\"]"),
    re.compile(r"message_key\s*(?::\s*\w+\s*)?=\s*['\"]([a-z0-9_]+(?:\.[a-z0-9_]+)+)['\"]"),
)


def catalogs() -> list[Path]:
    return sorted((ROOT / "locales").glob("*/LC_MESSAGES/*.po"))


def used_keys() -> set[str]:
    keys: set[str] = set()
    sources = [ROOT / "main.py"]
    for name in SOURCE_DIRS:
        sources.extend((ROOT / name).rglob("*.py"))
    for path in sources:
        text = path.read_text(encoding="utf-8", errors="ignore")
        for pattern in KEY_PATTERNS:
            keys.update(m.group(1) for m in pattern.finditer(text))
    return keys


def check() -> int:
    files = catalogs()
    if not files:
        print("no catalogs found under locales/", file=sys.stderr)
        return 1
    keys = used_keys()
    failures = 0
    for f in files:
        try:
            po = polib.pofile(str(f))
        except (OSError, ValueError) as exc:
            print(f"{f}: {exc}", file=sys.stderr)
            failures += 1
            continue
        translated = {e.msgid for e in po.translated_entries()}
        missing = sorted(keys - translated)
        if missing:
            print(f"[i18n] {f.relative_to(ROOT)} lacks {len(missing)} key(s): {', '.join(missing)}", file=sys.stderr)
            failures += 1
        extras = sorted({e.msgid for e in po} - keys)
        if extras:
            print(f"[i18n] {f.relative_to(ROOT)} has {len(extras)} unused key(s) (info)")
    return 1 if failures else 0


def compile_catalogs() -> int:
    for f in catalogs():
        target = f.with_suffix(".mo")
        polib.pofile(str(f)).save_as_mofile(str(target))
        print(f"compiled {target.relative_to(ROOT)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("command", choices=("check", "compile"))
    args = parser.parse_args(argv)
    return check() if args.command == "check" else compile_catalogs()


if __name__ == "__main__":
    raise SystemExit(main())
