#!/usr/bin/env python3
"""Clawd — a single-user personal assistant daemon.

Entry point. Wires config → store → channels → router → tools → runner →
orchestrator → HTTP API → scheduler. Handles the PID file, Unix signals
and graceful shutdown.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.handlers
import os
import signal
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from agentic import AgentRunner
from channels.http_api import HTTPApi
from channels.local import LocalChannel
from channels.telegram import TelegramChannel
from channels.whatsapp import WhatsAppChannel
from config import Config, ConfigError, load_config
from orchestrator import Orchestrator
from router import Router
from scheduler import TaskScheduler
from store import Store
from tools import create_default_registry, javascript, shell, web
from workspace import Workspaces

log = logging.getLogger("clawd")

# ─── PID File ────────────────────────────────────────────────────

def _check_pid_file(path: Path) -> None:
    """Refuse to start if another instance is live."""
    if not path.exists():
        return
    try:
        pid = int(path.read_text().strip())
        os.kill(pid, 0)
    except (ProcessLookupError, ValueError):
        log.info("Stale PID file found, removing")
        path.unlink()
        return
    except PermissionError:
        pass
    print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
    sys.exit(1)


def _write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()))


def _remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.debug("Could not remove PID file: %s", e)


# ─── Daemon ──────────────────────────────────────────────────────

class ClawdDaemon:
    def __init__(self, config: Config):
        self.config = config
        self.start_time = time.time()
        self.store: Store | None = None
        self.router: Router | None = None
        self.orchestrator: Orchestrator | None = None
        self.scheduler: TaskScheduler | None = None
        self._http_api: HTTPApi | None = None
        self._stop = asyncio.Event()

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "anthropic", "openai", "aiohttp.access"):
            logging.getLogger(name).setLevel(logging.WARNING)

    def _configure_tools(self) -> None:
        cfg = self.config
        shell.configure(default_timeout=cfg.bash_timeout, max_timeout=cfg.bash_max_timeout)
        web.configure(block_private=cfg.fetch_block_private, max_response=cfg.fetch_max_response)
        javascript.configure(node=cfg.node_binary, flags=cfg.node_flags,
                             timeout=cfg.javascript_timeout)

    def _init_channels(self) -> tuple[LocalChannel, WhatsAppChannel | None]:
        cfg = self.config
        local = LocalChannel(
            assistant_name=cfg.assistant_name,
            interactive=cfg.local_enabled and cfg.local_interactive,
        )
        self.router = Router(local)

        if cfg.telegram_token:
            self.router.add(TelegramChannel(
                token=cfg.telegram_token,
                allow_from=cfg.telegram_allow_from,
                chunk_limit=cfg.telegram_chunk_limit,
            ))

        whatsapp = None
        if cfg.whatsapp_phone_number_id and cfg.whatsapp_access_token:
            whatsapp = WhatsAppChannel(
                phone_number_id=cfg.whatsapp_phone_number_id,
                access_token=cfg.whatsapp_access_token,
                verify_token=cfg.whatsapp_verify_token,
                allowed_numbers=cfg.whatsapp_allowed_numbers,
            )
            self.router.add(whatsapp)
        return local, whatsapp

    def _build_status(self) -> dict:
        status = {
            "pid": os.getpid(),
            "uptime_s": time.time() - self.start_time,
            "channels": [c.name for c in self.router.channels] if self.router else [],
            "scheduler": bool(self.scheduler and self.scheduler.running),
        }
        if self.orchestrator is not None:
            status.update(self.orchestrator.status())
        return status

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigusr2():
            log.info("SIGUSR2: writing status")
            status_path = self.config.state_dir / "status.json"
            status_path.write_text(json.dumps(self._build_status(), indent=2))

        def handle_sigterm():
            log.info("Shutdown signal received, stopping gracefully")
            self._stop.set()

        try:
            loop.add_signal_handler(signal.SIGUSR2, handle_sigusr2)
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    async def run(self) -> None:
        """Start all components and run until signalled."""
        cfg = self.config
        pid_path = cfg.state_dir / "clawd.pid"

        self._setup_logging()
        log.info("Starting Clawd daemon for '%s'", cfg.assistant_name)

        _check_pid_file(pid_path)
        _write_pid_file(pid_path)

        try:
            self.store = Store(cfg.db_path)
            workspaces = Workspaces(cfg.workspace_dir)
            self._configure_tools()
            local, whatsapp = self._init_channels()

            registry = create_default_registry(cfg.output_truncation)
            runner = AgentRunner(registry, workspaces)
            self.orchestrator = await Orchestrator.create(
                cfg, self.store, workspaces, self.router, runner,
            )
            local.configure(assistant_name=self.orchestrator.assistant_name)

            for channel in self.router.channels:
                if not channel.is_configured():
                    continue
                try:
                    await channel.start()
                    log.info("Channel started: %s", channel.name)
                except Exception as e:
                    log.error("Channel %s failed to start: %s", channel.name, e)

            if cfg.http_enabled:
                self._http_api = HTTPApi(
                    self.orchestrator,
                    local,
                    host=cfg.http_host,
                    port=cfg.http_port,
                    auth_token=cfg.http_auth_token,
                    response_timeout=cfg.http_response_timeout,
                    whatsapp=whatsapp,
                    rate_limit=cfg.http_rate_limit,
                    rate_window=cfg.http_rate_window,
                )
                await self._http_api.start()

            self.scheduler = TaskScheduler(self.store, self.orchestrator,
                                           tick_seconds=cfg.scheduler_tick_seconds)
            self.scheduler.start()

            self._setup_signals(asyncio.get_running_loop())
            log.info("Clawd daemon running (PID %d)", os.getpid())

            await self._stop.wait()

        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            await self._shutdown()
            _remove_pid_file(pid_path)
            log.info("Clawd daemon stopped")

    async def _shutdown(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self._http_api is not None:
            await self._http_api.stop()
        if self.orchestrator is not None:
            await self.orchestrator.shutdown()
        if self.router is not None:
            for channel in self.router.channels:
                try:
                    await channel.stop()
                except Exception as e:
                    log.warning("Channel %s did not stop cleanly: %s", channel.name, e)
        if self.store is not None:
            self.store.close()


# ─── CLI Entry Point ─────────────────────────────────────────────

def _default_config_path() -> str | None:
    env = os.environ.get("CLAWD_CONFIG")
    if env:
        return env
    return "./clawd.toml" if Path("./clawd.toml").exists() else None


def main():
    parser = argparse.ArgumentParser(
        description="Clawd — a single-user personal assistant daemon",
    )
    parser.add_argument(
        "-c", "--config",
        default=_default_config_path(),
        help="Path to config file (default: $CLAWD_CONFIG or ./clawd.toml)",
    )
    parser.add_argument(
        "--no-local",
        action="store_true",
        help="Disable the interactive terminal channel",
    )
    args = parser.parse_args()

    overrides = {}
    if args.no_local:
        overrides["channels.local.interactive"] = False

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    daemon = ClawdDaemon(config)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
