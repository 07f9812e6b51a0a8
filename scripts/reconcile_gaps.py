#!/usr/bin/env python3
"""Resolve open reconciliation gaps against Stripe.

Safe to run on a schedule (e.g. a cron job every 15 minutes). Surplus
payments whose refund Stripe never recorded need a human decision; their
gaps are listed and left open.

Usage:
    python scripts/reconcile_gaps.py
"""

import sys
import os

# Add parent directory to path to import glossed modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from glossed import create_app
from glossed.models import ReconciliationGap
from glossed.services.settlement import SettlementService


def main():
    config_name = os.getenv('FLASK_ENV', 'development')
    app = create_app(config_name)
    
    with app.app_context():
        open_gaps = ReconciliationGap.query.filter(ReconciliationGap.resolved_at.is_(None)).count()
        print(f"\n🔍 Reconciliation pass: {open_gaps} open gap(s)\n")
        
        if not open_gaps:
            print("✅ Nothing to reconcile.\n")
            sys.exit(0)
        
        results = SettlementService.reconcile_gaps()
        
        pending = 0
        for result in results:
            if result['resolution']:
                print(f"  ✅ Gap {result['gap_id']}: {result['resolution']}")
            else:
                pending += 1
                print(f"  ⚠️  Gap {result['gap_id']}: still open, needs support")
        
        print(f"\n{len(results) - pending} resolved, {pending} still open.\n")
        sys.exit(1 if pending else 0)


if __name__ == '__main__':
    main()
