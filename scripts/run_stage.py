#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from rhythm_pipeline.processing_jobs import STAGES
from rhythm_pipeline.store import create_store_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one pipeline stage (or the job's next stage) for a processing job")
    parser.add_argument("--job-id", required=True, help="processing job id")
    parser.add_argument("--stage", choices=STAGES, default=None, help="stage to run; defaults to the job's current stage")
    parser.add_argument("--all", action="store_true", help="keep running stages until the job completes or a stage fails")
    parser.add_argument("--args-json", default="{}", help="json object of stage arguments")
    args = parser.parse_args()

    stage_args = json.loads(args.args_json)
    if not isinstance(stage_args, dict):
        parser.error("--args-json must be a json object")

    store = create_store_from_env()
    results = []
    while True:
        if args.stage:
            result = store.run_stage(args.stage, args.job_id, **stage_args)
        else:
            result = store.run_next_stage(args.job_id, **stage_args)
        results.append(result.to_dict())
        if not result.success or args.stage or not args.all:
            break
        if store.get_job(args.job_id)["status"] == "completed":
            break
    print(json.dumps(results, ensure_ascii=True, sort_keys=True, indent=2))
    return 0 if results[-1]["success"] else 2


if __name__ == "__main__":
    raise SystemExit(main())
