import argparse
import sys

from trigger_gate.audit.sink import FileAuditSink, verify_audit_stream
from trigger_gate.audit.recorder import AuditRecorder
from trigger_gate.errors import PolicyConfigInvalid
from trigger_gate.monitor import scan_anomalies
from trigger_gate.policy_loader import load_policy


def _check_policy(args):
    try:
        policy, policy_hash = load_policy(args.policy)
    except PolicyConfigInvalid as exc:
        print(f"POLICY_INVALID {exc}")
        return 1
    print(f"POLICY_OK version={policy.version} policy_hash={policy_hash}")
    return 0


def _verify_audit(args):
    try:
        result = verify_audit_stream(args.root, args.stream)
    except ValueError as exc:
        print(f"AUDIT_INVALID {exc}")
        return 1
    if not result.ok:
        print(f"AUDIT_INVALID {result.error} index={result.failed_index}")
        return 1
    print(f"AUDIT_OK stream={args.stream} entries={result.entries_checked}")
    return 0


def _scan_audit(args):
    try:
        policy, _ = load_policy(args.policy)
    except PolicyConfigInvalid as exc:
        print(f"POLICY_INVALID {exc}")
        return 1
    recorder = AuditRecorder(FileAuditSink(args.root, args.stream))
    anomalies = scan_anomalies(
        recorder.iter_entries(),
        min_account_age_days=policy.min_account_age_days,
        repeat_deny_threshold=args.repeat_deny_threshold,
    )
    for anomaly in anomalies:
        print(
            f"ANOMALY kind={anomaly.kind} actor={anomaly.actor_identifier} "
            f"sequences={','.join(str(s) for s in anomaly.sequences)} {anomaly.detail}"
        )
    return 2 if anomalies else 0


def build_parser():
    parser = argparse.ArgumentParser(prog="trigger_gate")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check-policy", help="load and validate a policy file")
    check.add_argument("policy", nargs="?", default=None)
    check.set_defaults(func=_check_policy)

    verify = sub.add_parser("verify-audit", help="verify the hash chain of an audit stream")
    verify.add_argument("root")
    verify.add_argument("--stream", default="default")
    verify.set_defaults(func=_verify_audit)

    scan = sub.add_parser("scan-audit", help="report anomalies in an audit stream")
    scan.add_argument("root")
    scan.add_argument("--stream", default="default")
    scan.add_argument("--policy", default=None)
    scan.add_argument("--repeat-deny-threshold", type=int, default=3)
    scan.set_defaults(func=_scan_audit)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
