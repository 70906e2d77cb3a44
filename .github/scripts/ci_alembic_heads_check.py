"""CI gate: assert the Alembic migration graph has a single head and a single root.

Two heads mean two migrations chained off the same parent; the sync schema
must upgrade in one deterministic order on every worker.

If a new migration is added, it MUST chain off the current head. Update
EXPECTED_HEADS in the same change.

Usage:
  python .github/scripts/ci_alembic_heads_check.py
"""
from __future__ import annotations

import sys
from pathlib import Path

api_root = Path(__file__).resolve().parents[2] / "apps" / "api"
sys.path.insert(0, str(api_root))

from alembic.config import Config
from alembic.script import ScriptDirectory

EXPECTED_HEADS = {"0001"}


def main() -> int:
    cfg = Config(str(api_root / "alembic.ini"))
    cfg.set_main_option("script_location", str(api_root / "alembic"))

    script = ScriptDirectory.from_config(cfg)
    heads = set(script.get_heads())

    if heads != EXPECTED_HEADS:
        print("MIGRATION HEAD CHECK FAILED")
        print(f"  Expected heads: {sorted(EXPECTED_HEADS)}")
        print(f"  Actual heads:   {sorted(heads)}")
        if heads - EXPECTED_HEADS:
            print("  Fix: chain the new migration off the current head (down_revision).")
        return 1

    revisions = list(script.walk_revisions())
    roots = [r.revision for r in revisions if r.down_revision is None]
    if len(roots) != 1:
        print("MIGRATION ROOT CHECK FAILED")
        print(f"  Expected exactly 1 root, found {len(roots)}: {sorted(roots)}")
        return 1

    print(f"Migration integrity check: OK ({len(heads)} heads, {len(revisions)} total)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
