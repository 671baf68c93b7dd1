import logging
import signal
import sys
import threading

import uvicorn

from tradevault.api.app import create_app
from tradevault.custodians.gateway import GatewayCustodian
from tradevault.notify.webhook import build_notifier
from tradevault.queue.website import WebsiteWorkQueue
from tradevault.trader.commands import ControlSurface
from tradevault.trader.desk import TradeDesk
from tradevault.trader.settings import DeskSettings, load_desk_settings
from tradevault.trading.custodian_pool import Custodian, CustodianPool, StartupError
from tradevault.utils.config_loader import load_config
from tradevault.utils.database import close_write_conn, force_commit, init_db, log_event

logger = logging.getLogger(__name__)


def build_pool(settings: DeskSettings) -> CustodianPool:
    custodians = [
        Custodian(
            name=c.name,
            id=c.id,
            role=c.role,
            trade_token=c.trade_token,
            client=GatewayCustodian(c.name, c.gateway_url, api_key=c.api_key, timeout=settings.gateway_timeout_seconds),
        )
        for c in settings.custodians
    ]
    return CustodianPool(
        custodians,
        attempts=settings.send_attempts,
        delay_seconds=settings.send_retry_delay_seconds,
    )


def build_desk(settings: DeskSettings) -> TradeDesk:
    pool = build_pool(settings)
    queue = WebsiteWorkQueue(
        settings.queue_fetch_url,
        settings.queue_callback_url,
        timeout=settings.queue_timeout_seconds,
    )
    notifier = build_notifier(settings.webhook_url)
    return TradeDesk(pool, queue, notifier, settings)


def _serve_api(desk: TradeDesk, control: ControlSurface, settings: DeskSettings) -> None:
    """Serve the admin API in this thread until a loop dies or a signal arrives."""
    app = create_app(control, admin_token=settings.admin_token)
    server = uvicorn.Server(
        uvicorn.Config(app, host=settings.api_host, port=settings.api_port, log_level="info")
    )

    def _watchdog() -> None:
        desk.wait()
        server.should_exit = True

    threading.Thread(target=_watchdog, name="tradevault-watchdog", daemon=True).start()
    server.run()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # The ledger must be reachable before anything else starts.
    try:
        init_db()
    except Exception:
        logger.exception("Ledger initialisation failed")
        sys.exit(1)

    try:
        config = load_config()
        settings = load_desk_settings(config)
        desk = build_desk(settings)
    except (FileNotFoundError, ValueError, StartupError) as e:
        logger.error("Startup failed: %s", e)
        sys.exit(1)

    control = ControlSurface(desk)

    def _handle_signal(signum, frame):
        logger.info("Signal %s received; stopping", signum)
        desk.request_shutdown()

    if not settings.api_enabled:
        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)

    desk.start()
    exit_code = 0
    try:
        if settings.api_enabled:
            _serve_api(desk, control, settings)
        else:
            desk.wait()
        if desk.failed:
            exit_code = 1
    finally:
        desk.stop()
        log_event("INFO", "Process exiting", subject="desk", step="shutdown")
        force_commit()
        close_write_conn()

    if exit_code:
        sys.exit(exit_code)
