#!/usr/bin/env python3
"""
Point the bridge and the mobile client at a new ngrok domain.

Free ngrok tunnels change domain on every restart. This rewrites:
- DEVELOPMENT_REDIRECT_URI / PRODUCTION_REDIRECT_URI in .env
- GOOGLE_AUTH_SERVICE_URL in ../services/api.ts
- the check-session fetch URL in ../app/onboarding.tsx

Usage:
    python redirect_domain.py https://abc123.ngrok-free.app [--root DIR]
"""

import argparse
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


NGROK_HOST = r"https://[^/]+\.ngrok-free\.app"

GOOGLE_CONSOLE_URL = "https://console.cloud.google.com/apis/credentials"

UPDATED = "updated"
UNCHANGED = "unchanged"
MISSING = "missing"


@dataclass
class Replacement:
    pattern: str
    template: str

    def apply(self, content: str, domain: str):
        regex = re.compile(self.pattern)
        if not regex.search(content):
            return content, False
        replacement = self.template.format(domain=domain)
        return regex.sub(lambda _: replacement, content, count=1), True


@dataclass
class TargetFile:
    path: str
    replacements: List[Replacement]


TARGET_FILES = [
    TargetFile(".env", [
        Replacement(f"DEVELOPMENT_REDIRECT_URI={NGROK_HOST}", "DEVELOPMENT_REDIRECT_URI={domain}"),
        Replacement(f"PRODUCTION_REDIRECT_URI={NGROK_HOST}", "PRODUCTION_REDIRECT_URI={domain}"),
    ]),
    TargetFile("../services/api.ts", [
        Replacement(
            f"const GOOGLE_AUTH_SERVICE_URL = '{NGROK_HOST}'",
            "const GOOGLE_AUTH_SERVICE_URL = '{domain}'"
        ),
    ]),
    TargetFile("../app/onboarding.tsx", [
        Replacement(
            f"fetch\\('{NGROK_HOST}/auth/check-session'",
            "fetch('{domain}/auth/check-session'"
        ),
    ]),
]


def is_valid_domain(domain: str) -> bool:
    return domain.startswith("https://") and ".ngrok-free.app" in domain


def update_file(path: Path, replacements: List[Replacement], domain: str) -> str:
    """
    Apply replacements to one file.

    Returns:
        UPDATED, UNCHANGED or MISSING
    """
    if not path.exists():
        return MISSING

    content = path.read_text(encoding="utf-8")
    changed = False
    for replacement in replacements:
        content, applied = replacement.apply(content, domain)
        changed = changed or applied

    if not changed:
        return UNCHANGED

    path.write_text(content, encoding="utf-8")
    return UPDATED


def update_domain(domain: str, root: Path) -> dict:
    """Rewrite every target file under root. Returns {relative path: status}."""
    return {
        target.path: update_file((root / target.path).resolve(), target.replacements, domain)
        for target in TARGET_FILES
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Update the ngrok domain used for the Google OAuth redirect."
    )
    parser.add_argument("domain", help="New ngrok domain, e.g. https://abc123.ngrok-free.app")
    parser.add_argument(
        "--root",
        default=str(Path(__file__).resolve().parent),
        help="Bridge directory containing .env (default: this script's directory)"
    )
    args = parser.parse_args(argv)

    domain = args.domain.rstrip("/")
    if not is_valid_domain(domain):
        print("Invalid ngrok domain format. Should be: https://xxxxx.ngrok-free.app")
        return 1

    print(f"Updating ngrok domain to: {domain}")
    results = update_domain(domain, Path(args.root))

    for path, status in results.items():
        if status == UPDATED:
            print(f"Updated: {path}")
        elif status == UNCHANGED:
            print(f"No changes needed: {path}")
        else:
            print(f"File not found: {path}")

    print("\nNext steps:")
    print("1. Add this to Google Cloud Console:")
    print(f"   {domain}/auth/google/success")
    print("2. Restart the bridge server")
    print("3. Test your mobile app")
    print("\nGoogle Cloud Console URL:")
    print(GOOGLE_CONSOLE_URL)
    return 0


if __name__ == "__main__":
    sys.exit(main())
