#!/usr/bin/env python3
"""Run the QC sampling router once per organization; meant for cron or a systemd timer."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from caseflow.sampling import BatchSamplingRouter
from caseflow.state_machine import Actor
from caseflow.store import store


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Route classified cases to manual QC or auto-pass")
    parser.add_argument("--org", action="append", required=True, help="organization id; repeat for several")
    parser.add_argument("--actor-id", default="system", help="actor recorded on comments and audit events")
    parser.add_argument("--actor-name", default="Batch Sampling", help="display name on case comments")
    parser.add_argument("--summary-only", action="store_true", help="omit per-case details from the output")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    router = BatchSamplingRouter(store)
    actor = Actor(id=args.actor_id, name=args.actor_name)
    results = []
    for org_id in args.org:
        summary = router.run_batch(tenant_id=org_id, actor=actor)
        if args.summary_only:
            summary = {k: v for k, v in summary.items() if k != "details"}
        results.append({"organization_id": org_id, **summary})
    print(json.dumps({"batches": results}, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
