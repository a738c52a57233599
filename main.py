import asyncio
import json
import logging
import sys
import argparse
from pathlib import Path

from config.config import load_config
from utils.errors import VotingCoreError
from utils.utils import setup_logging, format_duration
from zk.zk_proofs import MembershipSet, generate_identity, derive_nullifier
from blind.blind_tokens import issue_token, blind_token, unblind_signature, verify_token_signature
from integrated_voting_system import PrivateVotingCore

logger = logging.getLogger(__name__)


def run_keygen(core: PrivateVotingCore, election_id: str, organizer: str) -> int:
    core.create_election(election_id, organizer)
    metadata = core.setup_election_encryption(election_id, organizer)
    print(json.dumps(metadata.to_dict(), indent=2))
    return 0


def run_identity(election_id: str = None, seed: str = None) -> int:
    identity = generate_identity(seed)
    output = identity.public_dict()
    if election_id is not None:
        output['nullifier'] = derive_nullifier(identity.nullifier_secret, election_id)
    print(json.dumps(output, indent=2))
    return 0


async def run_self_test(core: PrivateVotingCore) -> int:
    await core.initialize()
    results = {}

    with core.monitor.start_operation("self_test"):
        results['vote_cipher'] = core.cipher.self_test()
        results['key_custody'] = core.custodian.self_test()

        members = MembershipSet(depth=8)
        identities = [generate_identity(f"self-test-{i}") for i in range(3)]
        for identity in identities:
            members.insert(identity.commitment)
        proof = members.prove_membership(identities[1].commitment)
        results['membership'] = members.verify_membership(proof)

        token = issue_token()
        public_numbers = core.blind_issuer.public_numbers
        blinded, r = blind_token(token.token, public_numbers)
        signature = unblind_signature(core.issue_blind_signature(blinded), r, public_numbers)
        results['blind_signature'] = verify_token_signature(token.token, signature, public_numbers)

    summary = core.monitor.get_summary()['operations']['self_test']
    for name, passed in results.items():
        print(f"  {name.replace('_', ' ').title()}: {'PASS' if passed else 'FAIL'}")
    print(f"Completed in {format_duration(summary['total_duration'])}")

    return 0 if all(results.values()) else 1


def main():
    parser = argparse.ArgumentParser(
        description='Private Voting Cryptography & Key Custody')
    parser.add_argument('--mode', choices=['keygen', 'identity', 'self-test'],
                        default='self-test')
    parser.add_argument('--election', type=str, help='Election id')
    parser.add_argument('--organizer', type=str,
                        help='Primary organizer address (keygen)')
    parser.add_argument('--seed', type=str,
                        help='Deterministic identity seed (identity, testing only)')
    parser.add_argument('--config', type=str,
                        default='config.yaml', help='Config file path')
    parser.add_argument('--log-level', type=str, default=None,
                        help='Override the configured log level')

    args = parser.parse_args()

    try:
        config = load_config(Path(args.config))
    except VotingCoreError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(args.log_level or config.log_level)

    try:
        if args.mode == 'identity':
            sys.exit(run_identity(args.election, args.seed))

        core = PrivateVotingCore(config)
        try:
            if args.mode == 'keygen':
                if not args.election or not args.organizer:
                    parser.error("--mode keygen requires --election and --organizer")
                sys.exit(run_keygen(core, args.election, args.organizer))
            sys.exit(asyncio.run(run_self_test(core)))
        finally:
            core.shutdown()
    except VotingCoreError as e:
        logger.error(f"{args.mode} failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
