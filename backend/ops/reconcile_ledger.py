"""Rebuild wallet balances from the transactions ledger and print the drift report.

Exit status is 0 when every wallet matches, 2 when any drifted.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Compare merchant and driver wallets against the ledger.")
    parser.add_argument("--since", default="", help="Free-form marker stored with the report.")
    parser.add_argument("--tolerance", type=float, default=0.01, help="Largest difference (KES) still treated as a match.")
    parser.add_argument("--persist", action="store_true", help="Store the report in reconciliation_reports.")
    parser.add_argument("--driver", type=int, action="append", default=[], help="Only print drift for this driver id.")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = _parse_args(argv)

    from orderflow import create_app
    from orderflow.services.reconciliation_service import persist_report, recompute_wallet_balances

    app = create_app()
    with app.app_context():
        summary = recompute_wallet_balances(since=(args.since or None), tolerance=args.tolerance)
        if args.persist:
            summary["report_id"] = int(persist_report(summary, created_by=None).id)

    if args.driver:
        wanted = set(args.driver)
        summary["drift_items"] = [
            item for item in summary["drift_items"] if item.get("wallet") != "driver" or item.get("driver_id") in wanted
        ]
    print(json.dumps(summary, indent=2))
    return 0 if int(summary.get("drift_count") or 0) == 0 else 2


if __name__ == "__main__":
    raise SystemExit(main())
