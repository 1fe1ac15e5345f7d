#!/usr/bin/env python3
"""
Noxwatch CLI - Main entry point
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from ..config import AgentConfig, ConfigError, LoggingConfig
from ..utils import JsonLinesLog, read_json, write_json_atomic

logger = logging.getLogger('noxwatch.cli')

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def setup_logging(config: LoggingConfig, verbose: bool = False):
    """Configure root logging: stderr always, plus a rotating file if configured."""
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if verbose else getattr(logging, config.level, logging.INFO))

    fmt = logging.Formatter(LOG_FORMAT)
    sh = logging.StreamHandler(sys.stderr)
    sh.setFormatter(fmt)
    root.addHandler(sh)

    if config.file:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(config.file)), exist_ok=True)
            handler = RotatingFileHandler(
                config.file, maxBytes=config.max_bytes, backupCount=config.backup_count
            )
        except OSError as e:
            logger.warning(f"Cannot open log file {config.file}: {e}")
        else:
            handler.setFormatter(fmt)
            root.addHandler(handler)


def load_config(args) -> AgentConfig:
    """Load config or exit with status 1 after one critical log line."""
    try:
        return AgentConfig.load(args.config)
    except ConfigError as e:
        if not logging.getLogger().handlers:
            logging.basicConfig(format=LOG_FORMAT)
        logger.critical(f"Invalid configuration: {e}")
        sys.exit(1)


def format_age(timestamp: Optional[str]) -> str:
    """'42s ago' style age of an ISO timestamp"""
    if not timestamp:
        return "never"
    try:
        then = datetime.fromisoformat(timestamp)
    except ValueError:
        return timestamp
    seconds = (datetime.now(timezone.utc) - then).total_seconds()
    if seconds < 120:
        return f"{seconds:.0f}s ago"
    if seconds < 7200:
        return f"{seconds / 60:.0f}m ago"
    return f"{seconds / 3600:.1f}h ago"


def read_agent_pid(config: AgentConfig) -> Optional[int]:
    try:
        return int(config.pid_path.read_text().strip())
    except (OSError, ValueError):
        return None


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


# === Commands ===

def cmd_run(args):
    """Run the agent in the foreground"""
    from ..agent import Agent

    config = load_config(args)
    setup_logging(config.logging, args.verbose)
    logger.info(f"Loaded configuration from {config.source or 'built-in defaults'}")

    try:
        asyncio.run(Agent(config).run())
    except OSError as e:
        logger.critical(f"Agent failed to start: {e}")
        sys.exit(1)


def cmd_status(args):
    """Show agent, process and health status from the state directory"""
    config = load_config(args)

    pid = read_agent_pid(config)
    heartbeat = read_json(config.heartbeat_path) or {}
    report = read_json(config.health_report_path) or {}
    supervisor = read_json(config.supervisor_state_path) or {}

    if args.json:
        print(json.dumps({
            'agent_pid': pid,
            'agent_running': bool(pid and pid_alive(pid)),
            'heartbeat': heartbeat,
            'health': report,
            'supervisor': supervisor,
        }, indent=2))
        return

    running = bool(pid and pid_alive(pid))
    print("=== Noxwatch Status ===\n")
    print(f"Agent:      {'running (pid ' + str(pid) + ')' if running else 'not running'}")
    print(f"Heartbeat:  {format_age(heartbeat.get('timestamp'))}")
    print(f"Health:     {report.get('status', 'unknown').upper()} "
          f"(checked {format_age(report.get('timestamp'))})")

    processes = supervisor.get('processes') or {}
    if processes:
        print("\nProcesses:")
        for name, proc in processes.items():
            line = f"  {name}: {proc.get('status')}"
            if proc.get('pid') and proc.get('status') == 'running':
                line += f" (pid {proc['pid']})"
            line += f", restarts {proc.get('restart_count', 0)}"
            if proc.get('resource_restarts'):
                line += f", resource restarts {proc['resource_restarts']}"
            print(line)

    services = report.get('services') or {}
    if services:
        print("\nServices:")
        for name, svc in services.items():
            print(f"  {name}: {'active' if svc.get('active') else 'INACTIVE'}")

    security = report.get('security') or {}
    if security:
        print("\nSecurity:")
        print(f"  Firewall:             {'active' if security.get('firewall') else 'INACTIVE'}")
        print(f"  Intrusion prevention: {'active' if security.get('intrusion_prevention') else 'INACTIVE'}")

    issues = report.get('issues') or []
    if issues:
        print(f"\nIssues ({len(issues)}):")
        for issue in issues:
            print(f"  - {issue}")


def cmd_heal_log(args):
    """Show recent self-healing actions"""
    config = load_config(args)
    entries = list(reversed(JsonLinesLog(config.heal_log_path).tail(args.limit)))

    if args.json:
        print(json.dumps(entries, indent=2))
        return

    if not entries:
        print("No self-healing actions recorded.")
        return

    print("=== Recent Self-Healing Actions ===\n")
    for entry in entries:
        status = "OK    " if entry.get('success') else "FAILED"
        print(f"{status} {entry.get('timestamp', '?')}  {entry.get('action')} {entry.get('target')}")
        if entry.get('details'):
            print(f"       {entry['details']}")


def cmd_reset(args):
    """Ask the running agent to reset failed processes"""
    config = load_config(args)
    pid = read_agent_pid(config)
    if pid is None or not pid_alive(pid):
        print(f"Error: no running agent found (pid file {config.pid_path})", file=sys.stderr)
        sys.exit(1)

    if args.name:
        write_json_atomic(config.state_dir / 'reset-request.json', {'name': args.name})
    try:
        os.kill(pid, signal.SIGUSR1)
    except PermissionError:
        print(f"Error: not permitted to signal agent pid {pid}", file=sys.stderr)
        sys.exit(1)
    print(f"Reset requested for {args.name or 'all processes'} (agent pid {pid})")


def cmd_check_config(args):
    """Validate the configuration file"""
    config = load_config(args)
    summary = config.summary()
    if args.json:
        print(json.dumps(summary, indent=2))
        return
    print(f"Configuration OK: {summary['source']}")
    print(f"  State dir:          {summary['state_dir']}")
    print(f"  Processes:          {', '.join(summary['processes']) or 'none'}")
    print(f"  Services:           {', '.join(summary['services']) or 'none'}")
    print(f"  External processes: {', '.join(summary['external_processes']) or 'none'}")
    print(f"  Webhooks:           {summary['webhooks']}")


def cli(argv=None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        prog='noxwatch',
        description='Noxwatch - process supervision and self-healing agent'
    )
    parser.add_argument('--config', '-c', help='Config file (default: $NOXWATCH_CONFIG or /etc/noxwatch/noxwatch.yaml)')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    run_parser = subparsers.add_parser('run', help='Run the agent in the foreground')
    run_parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    run_parser.set_defaults(func=cmd_run)

    status_parser = subparsers.add_parser('status', help='Show agent status')
    status_parser.add_argument('--json', '-j', action='store_true', help='Output as JSON')
    status_parser.set_defaults(func=cmd_status)

    heal_parser = subparsers.add_parser('heal-log', help='Show self-healing log')
    heal_parser.add_argument('--limit', '-l', type=int, default=20, help='Number of entries')
    heal_parser.add_argument('--json', '-j', action='store_true', help='Output as JSON')
    heal_parser.set_defaults(func=cmd_heal_log)

    reset_parser = subparsers.add_parser('reset', help='Reset failed processes in the running agent')
    reset_parser.add_argument('name', nargs='?', help='Process name (default: all)')
    reset_parser.set_defaults(func=cmd_reset)

    check_parser = subparsers.add_parser('check-config', help='Validate configuration')
    check_parser.add_argument('--json', '-j', action='store_true', help='Output as JSON')
    check_parser.set_defaults(func=cmd_check_config)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    args.func(args)


def main():
    """Entry point"""
    cli()


if __name__ == '__main__':
    main()
