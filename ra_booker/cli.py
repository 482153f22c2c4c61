"""Command-line interface for the Reserve America cart poller"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from . import __version__
from .api_client import RAApiClient
from .booking import (
    booking_mode,
    default_arrival_date,
    format_stay,
    parse_site_url,
    unlock_datetime,
    validate_booking,
)
from .config import (
    BASE_URL,
    DEFAULT_CADENCE,
    DEFAULT_CONTRACT_CODE,
    DEFAULT_COOKIE_FILE,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_DURATION,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_REQUEST_TIMEOUT,
    FAILURE_WARNING_THRESHOLD,
    THROTTLE_PAUSE_MAX,
    THROTTLE_PAUSE_MIN,
    THROTTLE_THRESHOLD,
)
from .credentials import (
    CookieFileCredentialProvider,
    CredentialProvider,
    StaticCredentialProvider,
    inspect_credentials,
)
from .exceptions import CartReadError, CredentialsMissingError, InvalidBookingError
from .logging_config import setup_logging
from .models import (
    AttemptRequest,
    BookingTarget,
    ErrorKind,
    PollingSession,
    PollingSettings,
    PollingState,
    StatusEvent,
)
from .rate_probe import run_rate_probe
from .reporter import StatusReporter
from .scheduler import PollingScheduler
from .storage import save_session_report

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CREDENTIALS = 2
EXIT_STOPPED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ra-booker",
        description="Reserve America cart poller - races add-to-cart when a site opens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    # Credentials
    cred_group = parser.add_argument_group("Credentials")
    cred_group.add_argument(
        "--cookies", type=str, help=f"Cookie export with idToken/a1Data (default: {DEFAULT_COOKIE_FILE})"
    )
    cred_group.add_argument("--id-token", type=str, help="idToken cookie value (JWT)")
    cred_group.add_argument("--a1-data", type=str, help="a1Data cookie value (JSON, may be URL-encoded)")

    # Target
    target_group = parser.add_argument_group("Booking Target")
    target_group.add_argument("--site-url", type=str, help="Campsite booking page URL")
    target_group.add_argument("--contract-code", type=str, help=f"State contract code (default: parsed from URL or {DEFAULT_CONTRACT_CODE})")
    target_group.add_argument("--facility-id", type=str, help="Facility id (overrides URL)")
    target_group.add_argument("--site-id", type=str, help="Site id (overrides URL)")
    target_group.add_argument("--arrival-date", type=str, help="Arrival date YYYY-MM-DD (default: today + 9 months)")
    target_group.add_argument("--nights", type=int, default=1, help="Nights to stay (1-14)")

    # Polling
    polling_group = parser.add_argument_group("Polling")
    polling_group.add_argument(
        "--cadence-ms", type=float, default=DEFAULT_CADENCE * 1000, help="Milliseconds between ticks"
    )
    polling_group.add_argument(
        "--max-concurrent", type=int, default=DEFAULT_MAX_CONCURRENT, help="Cap on in-flight requests"
    )
    polling_group.add_argument(
        "--max-duration", type=float, default=DEFAULT_MAX_DURATION, help="Session time budget in seconds"
    )
    polling_group.add_argument(
        "--throttle-pause-min-ms", type=float, default=THROTTLE_PAUSE_MIN * 1000,
        help="Lower bound of the pause after HTTP 000/429",
    )
    polling_group.add_argument(
        "--throttle-pause-max-ms", type=float, default=THROTTLE_PAUSE_MAX * 1000,
        help="Upper bound of the pause after HTTP 000/429",
    )
    polling_group.add_argument(
        "--throttle-threshold", type=int, default=THROTTLE_THRESHOLD,
        help="Consecutive throttles before concurrency drops by one",
    )
    polling_group.add_argument(
        "--failure-warning-threshold", type=int, default=FAILURE_WARNING_THRESHOLD,
        help="Consecutive failures before the 'check cookies' warning",
    )
    polling_group.add_argument(
        "--request-timeout", type=float, default=DEFAULT_REQUEST_TIMEOUT, help="Per-request timeout in seconds"
    )

    # Modes
    mode_group = parser.add_argument_group("Modes")
    mode_group.add_argument("--probe", action="store_true", help="Send a single add-item request and classify it")
    mode_group.add_argument("--show-cart", action="store_true", help="Print current cart holdings and exit")
    mode_group.add_argument("--rate-probe", action="store_true", help="Measure throttling (adds to cart on 200!)")
    mode_group.add_argument("--probe-duration", type=float, default=15.0, help="Rate probe duration in seconds")
    mode_group.add_argument("--probe-concurrency", type=int, default=20, help="Rate probe concurrency")
    mode_group.add_argument(
        "--probe-cadence-ms", type=float, default=0.0,
        help="Rate probe top-up interval (0 = fill every free slot each millisecond)",
    )

    # Configuration
    config_group = parser.add_argument_group("Configuration")
    config_group.add_argument("--output", type=str, default=str(DEFAULT_OUTPUT_DIR), help="Session report directory")
    config_group.add_argument("--verbose", action="store_true", help="Debug logging")
    config_group.add_argument("--log-file", type=str, help="Log file path")

    return parser


def build_settings(args: argparse.Namespace) -> PollingSettings:
    """Map CLI flags onto PollingSettings (raises ValueError on bad values)"""
    return PollingSettings(
        cadence=args.cadence_ms / 1000,
        max_concurrent=args.max_concurrent,
        max_duration=args.max_duration,
        throttle_pause_min=args.throttle_pause_min_ms / 1000,
        throttle_pause_max=args.throttle_pause_max_ms / 1000,
        throttle_threshold=args.throttle_threshold,
        failure_warning_threshold=args.failure_warning_threshold,
        request_timeout=args.request_timeout,
    )


def build_target(args: argparse.Namespace) -> BookingTarget:
    """Combine --site-url with explicit overrides and validate"""
    contract_code, facility_id, site_id = parse_site_url(args.site_url or "")
    return validate_booking(
        facility_id=args.facility_id or facility_id,
        site_id=args.site_id or site_id,
        arrival_date=args.arrival_date or default_arrival_date(),
        nights=args.nights,
        contract_code=args.contract_code or contract_code,
    )


def build_credential_provider(args: argparse.Namespace) -> CredentialProvider:
    if args.id_token or args.a1_data:
        return StaticCredentialProvider(args.id_token or "", args.a1_data or "")
    return CookieFileCredentialProvider(Path(args.cookies) if args.cookies else DEFAULT_COOKIE_FILE)


def exit_code_for(session: PollingSession) -> int:
    if session.state is PollingState.SUCCESS:
        return EXIT_SUCCESS
    if session.state is PollingState.STOPPED:
        return EXIT_STOPPED
    if session.error_kind is ErrorKind.AUTH:
        return EXIT_CREDENTIALS
    return EXIT_ERROR


def log_status(event: StatusEvent) -> None:
    status = f"HTTP {event.last_http_status:03d} " if event.last_http_status is not None else ""
    line = f"[{event.state.value}] #{event.request_count} {event.elapsed:.1f}s {status}- {event.display_message}"
    if event.state is PollingState.SUCCESS:
        logger.success(f"🎉 {line}")
    elif event.state is PollingState.ERROR:
        logger.error(line)
    else:
        logger.info(line)


def _install_stop_handler(scheduler: PollingScheduler) -> bool:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, scheduler.stop)
    except (NotImplementedError, RuntimeError):
        # Windows event loops: Ctrl+C falls back to KeyboardInterrupt
        logger.debug("Signal handlers unavailable; Ctrl+C will abort instead of stopping")
        return False
    return True


async def run_polling(
    client,
    provider: CredentialProvider,
    target: BookingTarget,
    settings: PollingSettings,
    output_dir: Optional[Path],
) -> int:
    """Run one polling session end to end and return the exit code"""
    reporter = StatusReporter(
        on_status=log_status,
        on_navigate=lambda: logger.info(f"🛒 Open {BASE_URL}/shoppingcart to check out"),
    )
    scheduler = PollingScheduler(client, provider, settings=settings, reporter=reporter)

    await scheduler.start(target)
    installed = _install_stop_handler(scheduler)
    try:
        session = await scheduler.wait()
    finally:
        if installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)

    if output_dir is not None:
        await save_session_report(
            session, target, reporter.events, list(reporter.entries), output_dir
        )
    return exit_code_for(session)


async def show_cart(client, provider: CredentialProvider) -> int:
    credentials = await provider.get_credentials()
    try:
        snapshot = await client.get_cart(credentials)
    except CartReadError as e:
        logger.error(f"Could not read cart: {e}")
        return EXIT_CREDENTIALS if e.status in (401, 403) else EXIT_ERROR

    logger.info(f"🛒 Cart itemsCount: {snapshot.items_count}")
    for item in snapshot.added_items:
        logger.info(f"   last added: {item}")
    return EXIT_SUCCESS


async def probe_once(client, provider: CredentialProvider, target: BookingTarget) -> int:
    credentials = await provider.get_credentials()
    outcome, decision = await client.probe_add_item(AttemptRequest(target=target, credentials=credentials))
    logger.info(f"Probe: HTTP {outcome.http_status:03d} → {decision.kind.value}: {decision.message}")
    if decision.error_kind is ErrorKind.AUTH:
        return EXIT_CREDENTIALS
    if decision.is_terminal:
        return EXIT_ERROR
    return EXIT_SUCCESS


def main() -> None:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args()

    setup_logging(verbose=args.verbose, log_file=Path(args.log_file) if args.log_file else None)

    logger.info("=" * 60)
    logger.info(f"Reserve America Cart Poller (v{__version__})")
    logger.info("=" * 60)

    try:
        settings = build_settings(args)
    except ValueError as e:
        logger.error(f"Invalid polling settings: {e}")
        sys.exit(EXIT_ERROR)

    target = None
    if not args.show_cart:
        try:
            target = build_target(args)
        except InvalidBookingError as e:
            for field_name, message in e.errors.items():
                logger.error(f"   {field_name}: {message}")
            logger.error("Booking target is invalid")
            sys.exit(EXIT_ERROR)

        logger.info(
            f"Target: {target.contract_code} facility {target.facility_id} site {target.site_id}, "
            f"{format_stay(target.arrival_date, target.nights)}"
        )
        if booking_mode(target.arrival_date) == "queue":
            logger.warning(
                f"⏳ Booking window opens {unlock_datetime(target.arrival_date):%Y-%m-%d %H:%M}; "
                f"expect 'too early' until then"
            )

    provider = build_credential_provider(args)
    output_dir = Path(args.output) if args.output else None

    async def run() -> int:
        credentials = await provider.get_credentials()
        check = inspect_credentials(credentials)
        if not check.token_valid:
            logger.warning("⚠️  idToken looks expired or malformed - expect HTTP 401")
        if not check.a1_valid:
            logger.warning("⚠️  a1Data is not valid JSON - expect validation errors")

        async with RAApiClient(timeout=settings.request_timeout, max_clients=settings.max_concurrent) as client:
            if args.show_cart:
                return await show_cart(client, provider)
            if args.probe:
                return await probe_once(client, provider, target)
            if args.rate_probe:
                await run_rate_probe(
                    client,
                    AttemptRequest(target=target, credentials=credentials),
                    concurrency=args.probe_concurrency,
                    duration=args.probe_duration,
                    cadence=args.probe_cadence_ms / 1000,
                )
                return EXIT_SUCCESS
            return await run_polling(client, provider, target, settings, output_dir)

    try:
        code = asyncio.run(run())
    except CredentialsMissingError as e:
        logger.error(f"❌ {e}")
        logger.error("   Export your reserveamerica.com cookies or pass --id-token/--a1-data")
        sys.exit(EXIT_CREDENTIALS)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        sys.exit(EXIT_STOPPED)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(EXIT_ERROR)

    sys.exit(code)


if __name__ == "__main__":
    main()
