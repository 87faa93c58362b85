#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from rhythm_pipeline.db.postgres import PostgresTxRunner
from rhythm_pipeline.ops.rule_consistency import check_rule_consistency
from rhythm_pipeline.repositories import PostgresRuleVersionsRepository
from rhythm_pipeline.rule_registry import RuleRegistry


def main() -> int:
    parser = argparse.ArgumentParser(description="Check that every rule key has at most one active version")
    parser.add_argument("--postgres-dsn", required=True, help="postgres dsn")
    parser.add_argument("--skip-audit", action="store_true", help="do not verify the audit hash chain")
    args = parser.parse_args()

    repository = PostgresRuleVersionsRepository(tx_runner=PostgresTxRunner(args.postgres_dsn))
    result = check_rule_consistency(repository)
    ok = result["consistent"]
    if not args.skip_audit:
        result["audit_integrity"] = RuleRegistry(repository=repository).verify_audit_integrity()
        ok = ok and result["audit_integrity"]["valid"]
    print(json.dumps(result, ensure_ascii=True, sort_keys=True, indent=2))
    return 0 if ok else 2


if __name__ == "__main__":
    raise SystemExit(main())
