"""CLI for scheduled upkeep: rank recomputation, auto-verification, settlement retry."""

import argparse
import json

from sportconnect.app import create_app
from sportconnect.services.escrow import sync_payments
from sportconnect.services.rankings import recalculate_ranks
from sportconnect.services.verification import auto_verify_stale


def _build_parser():
    parser = argparse.ArgumentParser(
        description='Run SportConnect maintenance jobs against the configured database.',
    )
    parser.add_argument(
        'command',
        choices=['recalculate-ranks', 'auto-verify', 'settle'],
        help=(
            'recalculate-ranks: dense ranks per (sport, district); '
            'auto-verify: verify matches past AUTO_VERIFY_HOURS; '
            'settle: retry processor calls for released/refunded payments.'
        ),
    )
    parser.add_argument(
        '--env',
        default='development',
        choices=['development', 'testing', 'production'],
        help='App config environment to use (default: development).',
    )
    parser.add_argument('--sport', help='Limit recalculate-ranks to one sport.')
    parser.add_argument('--district', help='Limit recalculate-ranks to one district.')
    return parser


def run(command, sport=None, district=None):
    if command == 'recalculate-ranks':
        return {'partitions': recalculate_ranks(sport=sport, district=district)}
    if command == 'auto-verify':
        return {'verified': auto_verify_stale()}
    if command == 'settle':
        synced, failed = sync_payments()
        return {'synced': synced, 'failed': failed}
    raise ValueError(f'Unknown command: {command}')


def main(argv=None):
    args = _build_parser().parse_args(argv)
    app = create_app(args.env)

    with app.app_context():
        result = run(args.command, sport=args.sport, district=args.district)
        result['command'] = args.command
        print(json.dumps(result, indent=2))
        return 1 if result.get('failed') else 0


if __name__ == '__main__':
    raise SystemExit(main())
