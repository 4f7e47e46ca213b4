import argparse
import csv
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional, Tuple
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from fusionsolar_exceptions import DataIntegrityError, FusionSolarError
from fusionsolar_http import FusionSolarHttpClient
from fusionsolar_session import FileSessionStore

logger = logging.getLogger(__name__)

BATTERY_SOC_SIGNAL_ID = "30007"
# Largest finite double, sent by the portal instead of null
NO_DATA_VALUE = 1.7976931348623157e308
TIME_AXIS_FORMAT = "%Y-%m-%d %H:%M"
BERLIN_TZ = ZoneInfo("Europe/Berlin")

ENERGY_BALANCE_PATH = "/rest/pvms/web/station/v1/overview/energy-balance"
DEVICE_HISTORY_PATH = "/rest/pvms/web/device/v1/device-history-data"

CSV_FIELDNAMES = [
    "utc_timestamp",
    "europe_berlin_timestamp",
    "pv_power",
    "use_power",
    "pv_use_power",
    "battery_power",
    "battery_soc",
    "total_pv_energy",
    "total_use_energy",
    "total_self_use_energy",
    "total_grid_import_energy",
    "total_grid_export_energy",
]


@dataclass(frozen=True)
class HistoryDataPoint:
    """Readings for one 5 minute interval. None means the portal had no data."""

    timestamp: datetime
    pv_power: Optional[float] = None
    use_power: Optional[float] = None
    pv_use_power: Optional[float] = None
    battery_power: Optional[float] = None
    battery_soc: Optional[float] = None


@dataclass(frozen=True)
class HistoryData:
    """Day totals plus the per-interval readings of one calendar day."""

    total_pv_energy: Optional[float]
    total_use_energy: Optional[float]
    total_self_use_energy: Optional[float]
    total_grid_import_energy: Optional[float]
    total_grid_export_energy: Optional[float]
    data_points: Tuple[HistoryDataPoint, ...] = ()


def parse_power_value(value) -> Optional[float]:
    """Parse a numeric reading, returning None for the portal's no-data markers.

    ``-``, ``--``, ``N/A``, empty or unparsable text and the max-double
    sentinel all become None. A real zero stays 0.0.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        number = float(value)
    else:
        content = str(value).strip()
        if content in ("-", "--") or content.lower() == "n/a":
            return None
        try:
            number = float(content)
        except ValueError:
            return None

    if number == NO_DATA_VALUE:
        return None
    return number


def parse_to_utc(text: str) -> datetime:
    """Parse a ``YYYY-MM-DD HH:MM`` time axis label as a UTC instant."""
    try:
        return datetime.strptime(text, TIME_AXIS_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError) as e:
        raise DataIntegrityError(f"Unexpected time axis value: {text!r}") from e


def derive_battery_power(charge: Optional[float], discharge: Optional[float]) -> Optional[float]:
    """Net battery power, positive while charging."""
    if charge is None and discharge is None:
        return None
    return (charge or 0.0) - (discharge or 0.0)


def _series(payload: dict, key: str) -> list:
    values = payload.get(key)
    if not isinstance(values, list):
        raise DataIntegrityError(f"Energy balance response missing '{key}'")
    return [parse_power_value(v) for v in values]


def _at(values: list, index: int) -> Optional[float]:
    return values[index] if index < len(values) else None


def battery_soc_by_timestamp(battery_response: dict) -> dict:
    """Map UTC instant to battery state of charge from a device history response.

    Raises:
        DataIntegrityError: If the response or one of its readings is malformed
    """
    signals = battery_response.get("data") or {}
    if not isinstance(signals, dict):
        raise DataIntegrityError("Battery history response has unexpected 'data'")
    signal = signals.get(BATTERY_SOC_SIGNAL_ID) or {}
    if not isinstance(signal, dict):
        raise DataIntegrityError(f"Battery history signal {BATTERY_SOC_SIGNAL_ID} is malformed")
    points = signal.get("pmDataList") or []
    if not isinstance(points, list):
        raise DataIntegrityError("Battery history 'pmDataList' is not a list")

    soc_by_timestamp = {}
    for point in points:
        if not isinstance(point, dict):
            raise DataIntegrityError(f"Unexpected battery reading: {point!r}")
        value = parse_power_value(point.get("counterValue"))
        start_time = point.get("startTime")
        if value is None or start_time is None:
            continue
        try:
            timestamp = datetime.fromtimestamp(int(start_time), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise DataIntegrityError(f"Unexpected battery reading time: {start_time!r}") from e
        soc_by_timestamp[timestamp] = value
    return soc_by_timestamp


def merge_history(energy_response: dict, battery_response: dict) -> HistoryData:
    """Merge an energy balance response and a battery history response.

    Energy balance series are aligned by index with the ``xAxis`` labels.
    Battery readings are joined by exact timestamp.

    Raises:
        DataIntegrityError: If the energy balance payload is missing
    """
    payload = energy_response.get("data")
    if not isinstance(payload, dict):
        raise DataIntegrityError("Energy balance response missing data")

    x_axis = payload.get("xAxis")
    if not isinstance(x_axis, list):
        raise DataIntegrityError("Energy balance response missing 'xAxis'")

    pv_power = _series(payload, "productPower")
    use_power = _series(payload, "usePower")
    pv_use_power = _series(payload, "selfUsePower")
    charge_power = _series(payload, "chargePower")
    discharge_power = _series(payload, "dischargePower")
    soc_by_timestamp = battery_soc_by_timestamp(battery_response)

    data_points = []
    for index, time_text in enumerate(x_axis):
        timestamp = parse_to_utc(time_text)
        data_points.append(HistoryDataPoint(
            timestamp=timestamp,
            pv_power=_at(pv_power, index),
            use_power=_at(use_power, index),
            pv_use_power=_at(pv_use_power, index),
            battery_power=derive_battery_power(
                _at(charge_power, index), _at(discharge_power, index)
            ),
            battery_soc=soc_by_timestamp.get(timestamp),
        ))

    return HistoryData(
        total_pv_energy=parse_power_value(payload.get("totalProductPower")),
        total_use_energy=parse_power_value(payload.get("totalUsePower")),
        total_self_use_energy=parse_power_value(payload.get("totalSelfUsePower")),
        total_grid_import_energy=parse_power_value(payload.get("totalBuyPower")),
        total_grid_export_energy=parse_power_value(payload.get("totalOnGridPower")),
        data_points=tuple(data_points),
    )


def _utc_midnight_millis(day: date) -> int:
    midnight = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return int(midnight.timestamp() * 1000)


class FusionSolarDataCollector:
    """Collects station history data from the FusionSolar portal."""

    def __init__(self, username: str, password: str, subdomain: str = "region01eu5",
                 http_client: Optional[FusionSolarHttpClient] = None):
        """Initialize the data collector.

        Args:
            username: FusionSolar username
            password: FusionSolar password
            subdomain: Portal subdomain, e.g. region01eu5 or uni001eu5
            http_client: Optional preconfigured HTTP client
        """
        self.http = http_client or FusionSolarHttpClient(subdomain, username, password)
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="fusionsolar")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def load_session(self, store: FileSessionStore) -> bool:
        """Restore a saved session, if there is a usable one.

        Returns:
            bool: True if a session was restored
        """
        snapshot = store.load()
        if snapshot is None:
            return False

        logger.info("Attempting to restore session from store")
        try:
            self.http.restore_session(snapshot)
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Failed to restore session, continuing without it: {e}")
            return False

        logger.info("✓ Session restored")
        return True

    def save_session(self, store: FileSessionStore) -> None:
        """Save the current session.

        Raises:
            OSError: If the session file cannot be written
        """
        store.save(self.http.export_session())
        logger.debug("Session saved to store")

    def get_history_data(self, station_id: str, battery_id: str, day: date) -> HistoryData:
        """Fetch and merge the history data of one day.

        The energy balance and the battery history are requested concurrently.
        Both have to succeed; no partial day is returned.

        Args:
            station_id: Station DN
            battery_id: Battery device DN
            day: Calendar day (UTC)

        Returns:
            HistoryData: Merged data for the day
        """
        energy_future = self._executor.submit(self._get_energy_balance, station_id, day)
        battery_future = self._executor.submit(self._get_battery_history, battery_id, day)
        wait([energy_future, battery_future])

        try:
            history = merge_history(energy_future.result(), battery_future.result())
        except Exception as e:
            logger.error(f"✗ Failed to fetch history data for date {day}: {e}")
            raise

        logger.debug(f"Retrieved {len(history.data_points)} data points for {day}")
        return history

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self.http.close()

    def _get_energy_balance(self, station_id: str, day: date) -> dict:
        return self.http.get(ENERGY_BALANCE_PATH, params={
            "stationDn": station_id,
            "timeDim": 2,
            "queryTime": _utc_midnight_millis(day),
            "timeZone": 0,
            "timeZoneStr": "UTC",
        })

    def _get_battery_history(self, battery_id: str, day: date) -> dict:
        return self.http.get(DEVICE_HISTORY_PATH, params={
            "signalIds": BATTERY_SOC_SIGNAL_ID,
            "deviceDn": battery_id,
            "date": _utc_midnight_millis(day),
        })


def _format_value(value: Optional[float]) -> str:
    return "" if value is None else str(value)


def history_rows(history: HistoryData) -> Iterator[dict]:
    """Yield one CSV row per data point, repeating the day totals."""
    for point in history.data_points:
        berlin_time = point.timestamp.astimezone(BERLIN_TZ).replace(tzinfo=None)
        yield {
            "utc_timestamp": point.timestamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "europe_berlin_timestamp": berlin_time.isoformat(timespec="seconds"),
            "pv_power": _format_value(point.pv_power),
            "use_power": _format_value(point.use_power),
            "pv_use_power": _format_value(point.pv_use_power),
            "battery_power": _format_value(point.battery_power),
            "battery_soc": _format_value(point.battery_soc),
            "total_pv_energy": _format_value(history.total_pv_energy),
            "total_use_energy": _format_value(history.total_use_energy),
            "total_self_use_energy": _format_value(history.total_self_use_energy),
            "total_grid_import_energy": _format_value(history.total_grid_import_energy),
            "total_grid_export_energy": _format_value(history.total_grid_export_energy),
        }


def date_range(start: date, end: date) -> Iterator[date]:
    """Yield every date from start to end, inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def fetch_to_csv(collector: FusionSolarDataCollector, station_id: str, battery_id: str,
                 start: date, end: date, target_file: Path) -> int:
    """Fetch each day in the range and append its rows to a new CSV file.

    Rows are flushed after every day, so a failure keeps earlier days.

    Returns:
        int: Number of rows written

    Raises:
        FileExistsError: If the target file already exists
        FusionSolarError: If a day cannot be fetched
    """
    if target_file.exists():
        raise FileExistsError(f"File already exists: {target_file}")
    target_file.parent.mkdir(parents=True, exist_ok=True)

    total_rows = 0
    with open(target_file, "x", newline="") as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=CSV_FIELDNAMES)
        writer.writeheader()

        for day in date_range(start, end):
            logger.info(f"Fetching data for date: {day}")
            history = collector.get_history_data(station_id, battery_id, day)
            writer.writerows(history_rows(history))
            csvfile.flush()

            total_rows += len(history.data_points)
            logger.info(f"✓ Date {day}: {len(history.data_points)} data points written")

    return total_rows


def main(argv=None):
    parser = argparse.ArgumentParser(description="FusionSolar history data fetcher")
    parser.add_argument("--username", help="FusionSolar username (or use .env)")
    parser.add_argument("--password", help="FusionSolar password (or use .env)")
    parser.add_argument("--subdomain", help="FusionSolar subdomain, e.g. region01eu5 (or use .env)")
    parser.add_argument("--station-id", help="FusionSolar station ID (or use .env)")
    parser.add_argument("--battery-id", help="FusionSolar battery device ID (or use .env)")
    parser.add_argument("--target-file", required=True, help="Target CSV file path")
    parser.add_argument("--start-date", required=True, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end-date", help="End date (YYYY-MM-DD, defaults to today in Europe/Berlin)")
    parser.add_argument("--session-file", help="Optional file to persist the authentication session")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Load environment variables from .env file
    load_dotenv()

    username = args.username or os.getenv("FUSIONSOLAR_USERNAME")
    password = args.password or os.getenv("FUSIONSOLAR_PASSWORD")
    subdomain = args.subdomain or os.getenv("FUSIONSOLAR_SUBDOMAIN", "region01eu5")
    station_id = args.station_id or os.getenv("FUSIONSOLAR_STATION_ID")
    battery_id = args.battery_id or os.getenv("FUSIONSOLAR_BATTERY_ID")
    session_file = args.session_file or os.getenv("FUSIONSOLAR_SESSION_FILE")

    if not username or not password:
        logging.error("Error: Please provide --username and --password or set "
                      "FUSIONSOLAR_USERNAME and FUSIONSOLAR_PASSWORD in .env")
        return 1
    if not station_id or not battery_id:
        logging.error("Error: Please provide --station-id and --battery-id or set "
                      "FUSIONSOLAR_STATION_ID and FUSIONSOLAR_BATTERY_ID in .env")
        return 1

    try:
        start = date.fromisoformat(args.start_date)
        end = date.fromisoformat(args.end_date) if args.end_date else datetime.now(BERLIN_TZ).date()
    except ValueError as e:
        logging.error(f"Error: Invalid date: {e}")
        return 1
    if end < start:
        logging.error(f"Error: End date {end} is before start date {start}")
        return 1

    target_file = Path(args.target_file)
    logging.info(f"Starting data fetch for station {station_id} and battery {battery_id}")
    logging.info(f"Date range: {start} to {end} ({(end - start).days + 1} days)")
    logging.info(f"Target file: {target_file}")

    store = FileSessionStore(session_file) if session_file else None

    with FusionSolarDataCollector(username, password, subdomain) as collector:
        if store:
            collector.load_session(store)

        try:
            total_rows = fetch_to_csv(collector, station_id, battery_id, start, end, target_file)
        except FileExistsError as e:
            logging.error(f"Error: {e}")
            return 1
        except FusionSolarError as e:
            logging.error(f"✗ Data fetch aborted: {e}")
            return 1

        logging.info("✓ Data fetch completed successfully")
        logging.info(f"Total rows written: {total_rows}")

        if store:
            try:
                collector.save_session(store)
            except OSError as e:
                logging.error(f"✗ Failed to save session to {session_file}: {e}")
                return 1
            logging.info(f"✓ Session saved to {session_file}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
