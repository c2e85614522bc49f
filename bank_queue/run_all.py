from __future__ import annotations

# Single-command runner.
#
# This module starts a full local branch from one command by spawning child
# processes:
# - queue engine
# - one terminal per counter
# - generator (Poisson arrivals)
#
# Optionally, it can also show the hall display in the parent process
# (use `--display`).
#
# The core system components remain independent processes.

import argparse
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass

from .config import MqttSettings, add_mqtt_args, mqtt_argv, mqtt_settings_from_args


@dataclass
class Child:
    name: str
    proc: subprocess.Popen


def run_all(
    *,
    settings: MqttSettings,
    counter_ids: list[str],
    arrival_rate: float,
    branch_id: str | None,
    seed: int | None,
    seed_file: str | None,
    base_seconds: float,
    per_effort_seconds: float,
    show_display: bool,
) -> None:
    if not counter_ids:
        raise ValueError("at least one counter is required")
    if arrival_rate <= 0:
        raise ValueError("arrival_rate must be > 0")

    python = sys.executable
    mqtt_args = mqtt_argv(settings)

    # Put all children in their own process groups so Ctrl+C can stop everything.
    def popen(name: str, args: list[str]) -> Child:
        proc = subprocess.Popen(
            args,
            preexec_fn=os.setsid,
        )
        return Child(name=name, proc=proc)

    children: list[Child] = []

    engine_args = [python, "-m", "bank_queue.manager", *mqtt_args]
    if seed_file:
        engine_args += ["--seed-file", seed_file]
    children.append(popen("engine", engine_args))

    # Small delay so the engine connects before others start sending requests.
    time.sleep(0.5)

    for cid in counter_ids:
        term_args = [
            python,
            "-m",
            "bank_queue.terminal",
            "--counter-id",
            cid,
            *mqtt_args,
            "--base-seconds",
            str(base_seconds),
            "--per-effort-seconds",
            str(per_effort_seconds),
        ]
        children.append(popen(f"terminal-{cid}", term_args))

    gen_args = [python, "-m", "bank_queue.generator", *mqtt_args, "--rate", str(arrival_rate)]
    if branch_id is not None:
        gen_args += ["--branch", branch_id]
    if seed is not None:
        gen_args += ["--seed", str(seed)]
    children.append(popen("generator", gen_args))

    print(
        "[run] started: "
        + ", ".join(f"{c.name}(pid={c.proc.pid})" for c in children)
        + "\nPress Ctrl+C to stop all."
    )

    # If the display was requested, run it in this (parent) process.
    if show_display:
        from .display import DisplayBoard

        board = DisplayBoard(
            mqtt_host=settings.host, mqtt_port=settings.port, namespace=settings.namespace, branch_id=branch_id
        )
        try:
            board.start()
            board.run()
        except KeyboardInterrupt:
            pass
        finally:
            board.close()
            _terminate_children(children)
        return

    # Otherwise, just wait for children.
    try:
        # Wait until any child exits unexpectedly.
        while True:
            for c in children:
                rc = c.proc.poll()
                if rc is not None:
                    raise RuntimeError(f"Child {c.name} exited with code {rc}")
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        _terminate_children(children)


def _signal_group(child: Child, sig: signal.Signals) -> None:
    try:
        os.killpg(os.getpgid(child.proc.pid), sig)
    except ProcessLookupError:
        # Exited between poll() and the signal.
        pass


def _terminate_children(children: list[Child]) -> None:
    # Try graceful termination.
    for c in children:
        if c.proc.poll() is None:
            _signal_group(c, signal.SIGTERM)

    # Wait a bit.
    deadline = time.time() + 2.0
    while time.time() < deadline:
        if all(c.proc.poll() is not None for c in children):
            return
        time.sleep(0.1)

    # Force kill.
    for c in children:
        if c.proc.poll() is None:
            _signal_group(c, signal.SIGKILL)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run engine + counter terminals + generator")
    add_mqtt_args(parser, namespace=f"bankqueue/run/{int(time.time())}")
    parser.add_argument("--counters", default="1,2,3,4", help="comma separated counter ids to staff")
    parser.add_argument("--arrival-rate", type=float, required=True, help="λ customers/second")
    parser.add_argument("--branch", default="B01")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--seed-file", default=None, help="JSON reference data for the engine")
    parser.add_argument("--base-seconds", type=float, default=1.0)
    parser.add_argument("--per-effort-seconds", type=float, default=1.0)
    parser.add_argument("--display", action="store_true", help="show the hall display in this terminal")
    args = parser.parse_args()

    run_all(
        settings=mqtt_settings_from_args(args),
        counter_ids=[c.strip() for c in args.counters.split(",") if c.strip()],
        arrival_rate=args.arrival_rate,
        branch_id=args.branch or None,
        seed=args.seed,
        seed_file=args.seed_file,
        base_seconds=args.base_seconds,
        per_effort_seconds=args.per_effort_seconds,
        show_display=args.display,
    )


if __name__ == "__main__":
    main()
