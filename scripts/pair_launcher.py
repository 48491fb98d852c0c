"""Start a pairing server plus N display/controller pairs and keep them chatting.

Each controller reads messages from stdin, so the launcher writes a line to
every controller on a fixed interval. Everything is torn down on exit.
"""
from __future__ import annotations

import argparse
import atexit
import random
import signal
import string
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(slots=True)
class Child:
    name: str
    proc: subprocess.Popen
    code: Optional[str] = None

    @property
    def alive(self) -> bool:
        return self.proc.poll() is None

    def write_line(self, line: str) -> bool:
        if not self.alive or self.proc.stdin is None:
            return False
        try:
            self.proc.stdin.write(line + "\n")
            self.proc.stdin.flush()
        except OSError:
            return False
        return True

    def stop(self, grace: float) -> None:
        if not self.alive:
            return
        if self.proc.stdin is not None:
            try:
                self.proc.stdin.close()
            except OSError:
                pass
        self.proc.terminate()
        try:
            self.proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            print(f"{self.name} ignored SIGTERM; killing")
            self.proc.kill()


@dataclass
class ProcessGroup:
    workdir: str
    children: list[Child] = field(default_factory=list)

    def spawn(self, name: str, cmd: list[str], *, code: Optional[str] = None, interactive: bool = False) -> Child:
        proc = subprocess.Popen(cmd, cwd=self.workdir, stdin=subprocess.PIPE if interactive else None, text=True)
        child = Child(name, proc, code)
        self.children.append(child)
        return child

    def stop_all(self, grace: float = 5.0) -> None:
        # Newest first so clients go before the server they talk to.
        while self.children:
            child = self.children.pop()
            try:
                child.stop(grace)
            except Exception as exc:
                print(f"Failed to stop {child.name}: {exc}")


def random_code() -> str:
    return "".join(random.choices(CODE_ALPHABET, k=6))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Launch a pairing server and display/controller pairs")
    parser.add_argument("--python", default=sys.executable, help="Interpreter used for child processes")
    parser.add_argument("--server-host", default="127.0.0.1")
    parser.add_argument("--server-port", type=int, default=3001)
    parser.add_argument("--no-server", action="store_true", help="Reuse a server that is already running")
    parser.add_argument(
        "--server-rate-limit",
        type=int,
        default=1000,
        help="Message rate limit for the spawned server; every client shares one address",
    )
    parser.add_argument("--pairs", type=int, default=10, help="How many display/controller pairs to start")
    parser.add_argument("--p2p", action="store_true", help="Let clients try a direct data channel")
    parser.add_argument("--stagger", type=float, default=0.2, help="Pause between client launches")
    parser.add_argument("--server-warmup", type=float, default=2.0, help="Pause after starting the server")
    parser.add_argument("--pair-delay", type=float, default=1.0, help="Pause between the displays and their controllers")
    parser.add_argument("--message-interval", type=float, default=5.0, help="Seconds between controller messages; 0 disables")
    parser.add_argument("--log-level", default="WARNING", help="Log level for every child")
    parser.add_argument("--workspace", default=str(Path(__file__).resolve().parent.parent), help="Repository root")
    return parser


def main() -> None:
    args = build_parser().parse_args()
    group = ProcessGroup(args.workspace)
    atexit.register(group.stop_all)

    def on_signal(signum: int, frame: object) -> None:  # pragma: no cover - signal runtime
        group.stop_all()
        sys.exit(0)

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    server_url = f"http://{args.server_host}:{args.server_port}"
    if not args.no_server:
        group.spawn(
            "server",
            [
                args.python, "-m", "server",
                "--host", args.server_host,
                "--port", str(args.server_port),
                "--message-rate-limit", str(args.server_rate_limit),
                "--log-level", args.log_level,
            ],
        )
        print(f"Server starting on {server_url}")
        time.sleep(max(args.server_warmup, 0.0))

    def client_cmd(*extra: str) -> list[str]:
        cmd = [args.python, "-m", "client", "--server-url", server_url, "--log-level", args.log_level]
        if args.p2p:
            cmd.append("--p2p")
        return cmd + list(extra)

    codes = [random_code() for _ in range(args.pairs)]
    for number, code in enumerate(codes, start=1):
        print(f"display {number}/{args.pairs}: {code}")
        group.spawn(f"display-{code}", client_cmd("display", "--code", code), code=code)
        time.sleep(max(args.stagger, 0.0))

    time.sleep(max(args.pair_delay, 0.0))

    controllers = []
    for number, code in enumerate(codes, start=1):
        print(f"controller {number}/{args.pairs} -> {code}")
        controllers.append(
            group.spawn(
                f"controller-{code}",
                client_cmd("--user-id", f"load-{number}", "controller", code),
                code=code,
                interactive=True,
            )
        )
        time.sleep(max(args.stagger, 0.0))

    print(f"{len(group.children)} processes running; Ctrl+C stops them all.")

    tick = 0
    try:
        while True:
            if args.message_interval <= 0:
                time.sleep(1.0)
                continue
            time.sleep(args.message_interval)
            tick += 1
            for controller in controllers:
                if not controller.write_line(f"{controller.code} #{tick}") and controller.alive:
                    print(f"{controller.name} stopped reading input")
    except KeyboardInterrupt:
        pass
    finally:
        group.stop_all()


if __name__ == "__main__":
    main()
