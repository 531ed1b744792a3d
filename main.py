import json
import logging
import time
from pathlib import Path
import argparse
import sys

from config.config import SystemConfig, load_config
from curve.babyjubjub import CurveContext, Scalar
from identity.key_derivation import DerivationError, derive_keypair, public_key_to_strings, signal_hex
from identity.signatures import SchnorrSigner, authority_action_message
from integrated_voting_system import IntegratedVotingSystem, VotingSystemError
from storage.election_store import StoreError
from tally.tally_protocol import TallyError
from utils.utils import setup_logging, save_results, format_duration

logger = logging.getLogger(__name__)

AUTHORITY_ACTIONS = ("close",)


def read_secret(value: str) -> bytes:
    """32-byte secret from a hex string, with or without 0x"""
    text = value.strip()
    if text.startswith(('0x', '0X')):
        text = text[2:]
    try:
        secret = bytes.fromhex(text)
    except ValueError as e:
        raise DerivationError("Secret must be hex encoded") from e
    return secret


def read_authority_key(curve: CurveContext, path: Path) -> Scalar:
    """Authority private scalar stored as decimal or 0x-prefixed hex"""
    text = Path(path).read_text().strip()
    try:
        value = int(text, 0)
    except ValueError as e:
        raise ValueError(f"{path} does not contain an integer key") from e
    sk = curve.scalar(value)
    if sk.is_zero():
        raise ValueError("Authority key reduces to zero")
    return sk


def cmd_keygen(args, config: SystemConfig) -> int:
    curve = CurveContext.babyjubjub()
    keypair = derive_keypair(curve, read_secret(args.secret))
    output = {
        'public_key': public_key_to_strings(keypair.pk),
        'signal': signal_hex(keypair.pk),
    }
    print(json.dumps(output, indent=2))
    return 0


def cmd_sign_action(args, config: SystemConfig) -> int:
    curve = CurveContext.babyjubjub()
    sk = read_authority_key(curve, args.key_file)
    signature = SchnorrSigner(curve).sign(
        sk, authority_action_message(args.action, args.election))
    print(signature.to_json())
    return 0


def cmd_tally(args, config: SystemConfig) -> int:
    system = IntegratedVotingSystem(config)
    sk = read_authority_key(system.curve, args.key_file)

    start_time = time.time()
    report = system.process_tally(args.election, sk, processed_by=args.processed_by)
    duration = time.time() - start_time

    results = {
        'election_id': report.election_id,
        'processed_at': report.processed_at,
        'processed_by': report.processed_by,
        'discrete_log_bound': report.discrete_log_bound,
        'results': [r.to_dict() for r in report.results],
        'manual_review': report.manual_review,
        'final_results': system.final_results(args.election).to_dict(),
    }
    stamp = int(time.time())
    output_file = config.results_dir / f"tally_{args.election}_{stamp}.json"
    save_results(results, output_file)
    metrics_file = config.results_dir / f"metrics_{args.election}_{stamp}.json"
    system.monitor.save_metrics(metrics_file)

    print(f"Tallied {len(report.results)} voters in {format_duration(duration)}")
    print(f"  Nullified votes: {len(report.nullified_participants)}")
    if report.manual_review:
        print(f"  Manual review required for: {', '.join(report.manual_review)}")
    print(f"  Results written to {output_file}")
    print(f"  Metrics written to {metrics_file}")
    return 0


def cmd_results(args, config: SystemConfig) -> int:
    system = IntegratedVotingSystem(config)
    final = system.final_results(args.election)
    print(json.dumps(final.to_dict(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Coercion-resistant Voting System')
    parser.add_argument('--config', type=str,
                        default='config.yaml', help='Config file path')
    parser.add_argument('--log-level', type=str, default=None,
                        help='Override the configured log level')

    subparsers = parser.add_subparsers(dest='command', required=True)

    keygen = subparsers.add_parser(
        'keygen', help='Derive the public key and signal from a 32-byte hex secret')
    keygen.add_argument('--secret', required=True, help='Hex encoded secret')
    keygen.set_defaults(handler=cmd_keygen)

    sign = subparsers.add_parser(
        'sign-action', help='Sign an election authority action')
    sign.add_argument('--election', required=True)
    sign.add_argument('--action', choices=AUTHORITY_ACTIONS, default='close')
    sign.add_argument('--key-file', type=Path, required=True,
                      help='File holding the authority private key')
    sign.set_defaults(handler=cmd_sign_action)

    tally = subparsers.add_parser(
        'tally', help='Run the nullification tally for a closed election')
    tally.add_argument('--election', required=True)
    tally.add_argument('--key-file', type=Path, required=True,
                       help='File holding the authority private key')
    tally.add_argument('--processed-by', default=None)
    tally.set_defaults(handler=cmd_tally)

    results = subparsers.add_parser(
        'results', help='Print preliminary and final results')
    results.add_argument('--election', required=True)
    results.set_defaults(handler=cmd_results)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(Path(args.config))
    setup_logging(args.log_level or config.log_level, log_dir=config.log_dir)

    try:
        return args.handler(args, config)
    except (VotingSystemError, TallyError, StoreError, DerivationError,
            ValueError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
