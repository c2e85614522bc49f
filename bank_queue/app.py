from __future__ import annotations

# Single-entrypoint runner.
#
# Primary way to run the project is the single command:
#     python -m bank_queue.app run --arrival-rate LAMBDA [--display]
#
# The other subcommands start one component each, for debugging and for
# spreading a branch over several machines.

import argparse

from .config import add_logging_args, add_mqtt_args


def main() -> None:
    parser = argparse.ArgumentParser(description="Bank Branch Queue System (MQTT) - main entrypoint")
    sub = parser.add_subparsers(dest="cmd", required=True)

    # ---- Normal operation: one command ----
    p_run = sub.add_parser("run", help="Start engine + counter terminals + generator (optional display)")
    add_mqtt_args(p_run)
    p_run.add_argument("--counters", default="1,2,3,4")
    p_run.add_argument("--arrival-rate", type=float, required=True, help="λ customers/second")
    p_run.add_argument("--branch", default="B01")
    p_run.add_argument("--seed", type=int, default=None)
    p_run.add_argument("--seed-file", default=None)
    p_run.add_argument("--display", action="store_true", help="show the hall display")

    # ---- Single components ----
    p_srv = sub.add_parser("serve", help="Start the queue engine only")
    add_mqtt_args(p_srv)
    add_logging_args(p_srv)
    p_srv.add_argument("--seed-file", default=None)
    p_srv.add_argument("--data-dir", default=None)

    p_kiosk = sub.add_parser("kiosk", help="Issue one ticket")
    add_mqtt_args(p_kiosk)
    p_kiosk.add_argument("--service", default="DEPOSIT")
    p_kiosk.add_argument("--segment", default="REGULAR")
    p_kiosk.add_argument("--branch", default=None)
    p_kiosk.add_argument("--name", default=None)
    p_kiosk.add_argument("--booking-code", default=None)

    p_term = sub.add_parser("terminal", help="Start a single counter terminal")
    add_mqtt_args(p_term)
    p_term.add_argument("--counter-id", required=True)
    p_term.add_argument("--staff-id", default=None)

    p_disp = sub.add_parser("display", help="Show the hall display")
    add_mqtt_args(p_disp)
    p_disp.add_argument("--branch", default=None)

    args = parser.parse_args()
    mqtt_args = ["--mqtt-host", args.mqtt_host, "--mqtt-port", str(args.mqtt_port), "--namespace", args.namespace]

    if args.cmd == "run":
        from .run_all import main as run

        run_args = [
            *mqtt_args,
            "--counters",
            args.counters,
            "--arrival-rate",
            str(args.arrival_rate),
            "--branch",
            args.branch,
        ]
        run_args += _optional("--seed", args.seed) + _optional("--seed-file", args.seed_file)
        if args.display:
            run_args += ["--display"]
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "serve":
        from .manager import main as run

        run_args = [*mqtt_args, "--log-level", args.log_level]
        run_args += _optional("--seed-file", args.seed_file) + _optional("--data-dir", args.data_dir)
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "kiosk":
        from .kiosk import main as run

        run_args = [*mqtt_args, "--service", args.service, "--segment", args.segment]
        run_args += (
            _optional("--branch", args.branch)
            + _optional("--name", args.name)
            + _optional("--booking-code", args.booking_code)
        )
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "terminal":
        from .terminal import main as run

        run_args = [*mqtt_args, "--counter-id", args.counter_id] + _optional("--staff-id", args.staff_id)
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "display":
        from .display import main as run

        _dispatch_to_module_main(run, [*mqtt_args] + _optional("--branch", args.branch))
        return


def _optional(flag: str, value: object) -> list[str]:
    return [] if value is None else [flag, str(value)]


def _dispatch_to_module_main(module_main, argv: list[str]) -> None:
    import sys

    old_argv = sys.argv[:]
    try:
        sys.argv = [old_argv[0], *argv]
        module_main()
    finally:
        sys.argv = old_argv


if __name__ == "__main__":
    main()
