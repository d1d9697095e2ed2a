import argparse
import logging
import signal
import threading

from fleetrobot import __version__
from fleetrobot.config import load_settings
from fleetrobot.domain import records_for_team
from fleetrobot.myfleet_gateway import MyFleetGateway
from fleetrobot.state_file import load_records
from fleetrobot.telegram_notifier import TelegramNotifier
from fleetrobot.worker import run_check_once, run_forever, _send_status_message


def _setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        filename=log_file,
    )


def _install_signal_handlers(stop: threading.Event) -> None:
    def _handle(signum, _frame) -> None:
        logging.getLogger(__name__).info("Signal %s received, finishing current tick", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def _list_records(booking_file: str, team: str | None) -> None:
    records = load_records(booking_file)
    if team is not None:
        records = records_for_team(records, team)
    for r in records:
        print(f"{r.id:>5} {r.team:<12} {r.resource:<14} {r.date} {r.time:<5} {r.duration:>4}m  "
              f"{r.state.value or '-':<10} {r.message}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="FleetRobot: keeps boat reservations in line with booking requests")
    parser.add_argument("--once", action="store_true", help="Run a single reconciliation pass and exit")
    parser.add_argument("--list", action="store_true", help="Print the stored bookings and exit")
    parser.add_argument("--team", help="Only list bookings of this team")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument("--log-file", help="Append log output to this file instead of stderr")
    parser.add_argument("--version", action="version", version=f"FleetRobot {__version__}")
    args = parser.parse_args(argv)

    _setup_logging(args.log_level, args.log_file)
    settings = load_settings()

    if args.list:
        _list_records(settings.booking_file, args.team)
        return 0

    gateway = MyFleetGateway(settings)
    notifier = TelegramNotifier(settings.telegram_bot_token) if settings.telegram_bot_token else None

    # Startup notice (best-effort)
    try:
        _send_status_message(
            settings,
            text=(
                f"FleetRobot {__version__} started.\n"
                f"Mode: {'once' if args.once else 'forever'}\n"
                f"club={settings.club_id} interval={settings.refresh_interval}s"
            ),
        )
    except Exception:
        logging.getLogger(__name__).warning("Failed to send Telegram startup message", exc_info=True)

    try:
        if args.once:
            run_check_once(settings, gateway, notifier)
            return 0

        stop = threading.Event()
        _install_signal_handlers(stop)
        run_forever(settings, gateway, notifier, stop=stop)
        return 0

    except Exception as e:
        # Crash notice (best-effort)
        try:
            _send_status_message(
                settings,
                text=(
                    "FleetRobot stopped with an error.\n"
                    f"Reason: {type(e).__name__}: {e}"
                ),
            )
        except Exception:
            logging.getLogger(__name__).warning("Failed to send Telegram crash message", exc_info=True)
        raise

    finally:
        # Shutdown notice (best-effort)
        try:
            _send_status_message(settings, text="FleetRobot stopped (process exit).")
        except Exception:
            logging.getLogger(__name__).warning("Failed to send Telegram shutdown message", exc_info=True)


if __name__ == "__main__":
    raise SystemExit(main())
