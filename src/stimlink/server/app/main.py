"""Command-line entry point for the stimlink control server."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from stimlink.server.app.console_adapter import ConsoleAdapter
from stimlink.server.app.orchestrator import Orchestrator
from stimlink.server.config import load_server_ctx
from stimlink.server.config.logging_policy import apply_debug_policy
from stimlink.server.config.models import OrchestratorConfig, ServerCtx
from stimlink.server.control.control_channel_server import ControlChannelServer

logger = logging.getLogger(__name__)


def build_ctx(args, env=None) -> ServerCtx:
    ctx = load_server_ctx(env)
    cfg = ctx.cfg
    overrides = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        port = min(max(int(args.port), 1024), 65535)
        overrides["port"] = port
        overrides["port_search_start"] = port
        overrides["port_search_end"] = min(max(OrchestratorConfig().port_search_end, port + 100), 65535)
    if args.debounce_ms is not None:
        overrides["damage_debounce_ms"] = max(0, int(args.debounce_ms))
    if args.yield_to_stop:
        overrides["dispatch_yields_to_stop"] = True
    if args.advertise_host is not None:
        overrides["advertise_host"] = args.advertise_host
    if overrides:
        ctx = replace(ctx, cfg=replace(cfg, **overrides))
    return ctx


async def serve(ctx: ServerCtx, *, console: bool = True) -> int:
    cfg = ctx.cfg
    transport = ControlChannelServer(
        cfg.host,
        heartbeat_s=cfg.heartbeat_s,
        send_timeout_s=cfg.send_timeout_s,
        log_bindings=ctx.debug_policy.logging.log_bindings,
    )
    orchestrator = Orchestrator(transport, ctx)
    if not await orchestrator.start():
        return 1
    adapter = ConsoleAdapter(orchestrator) if console else None
    if adapter is not None:
        adapter.start()
    logger.info("status: %s", orchestrator.get_status().describe())
    try:
        await asyncio.Future()
    finally:
        if adapter is not None:
            adapter.stop()
        await orchestrator.shutdown()
    return 0


def main() -> None:
    import argparse
    parser = argparse.ArgumentParser(description='stimlink haptic control server')
    parser.add_argument('--host', default=None, help='Listen address (default: STIMLINK_HOST or 0.0.0.0)')
    parser.add_argument('--port', type=int, default=None, help='Preferred listen port (default: STIMLINK_PORT or 9999)')
    parser.add_argument('--advertise-host', default=None, help='Host placed in the connection URL instead of the LAN address')
    parser.add_argument('--debounce-ms', type=int, default=None, help='Minimum spacing between accepted damage events')
    parser.add_argument('--yield-to-stop', action='store_true', help='Hold dispatch ticks while an emergency stop is pending')
    parser.add_argument('--no-console', action='store_true', help='Do not read test commands from stdin')
    parser.add_argument('--debug', action='store_true', help='Enable DEBUG for stimlink loggers')
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO,
                        format='[%(asctime)s] %(name)s - %(levelname)s - %(message)s')
    ctx = build_ctx(args)
    apply_debug_policy(ctx.debug_policy)
    if args.debug:
        logging.getLogger('stimlink').setLevel(logging.DEBUG)
    if not ctx.cfg.enabled:
        logger.info("stimlink disabled by configuration")
        return

    try:
        code = asyncio.run(serve(ctx, console=not args.no_console))
    except KeyboardInterrupt:
        code = 0
    raise SystemExit(code)


if __name__ == '__main__':
    main()
