"""World Bank Indicators API v2 adapter.

Free, no API key. Handles locators such as:
    https://data.worldbank.org/indicator/SP.DYN.TFRT.IN
    https://api.worldbank.org/v2/country/ITA/indicator/SP.DYN.TFRT.IN
    https://data.worldbank.org/indicator/SP.URB.TOTL.IN.ZS?geo=SSF
"""

import datetime as dt
import logging
import re
from typing import List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from sdl.pulse.adapters.base import DataAdapter, DataSourceError
from sdl.pulse.types import AdapterConfig, ObservedPoint

logger = logging.getLogger(__name__)

WORLDBANK_API_URL = "https://api.worldbank.org/v2"
DEFAULT_COUNTRY = "ITA"
FIRST_YEAR = 2000
REQUEST_TIMEOUT = (5, 15)

GEO_TO_WB = {
    "IT": "ITA", "DE": "DEU", "FR": "FRA", "ES": "ESP", "PL": "POL",
    "EU": "EUU", "EU27": "EUU", "SSF": "SSF", "WLD": "WLD",
}

_INDICATOR_RE = re.compile(r"indicator/([A-Z0-9._]+)", re.IGNORECASE)
_COUNTRY_RE = re.compile(r"country/([A-Z]{2,3})/", re.IGNORECASE)
_GEO_RE = re.compile(r"[?&]geo=([A-Z0-9_]+)", re.IGNORECASE)

_retry = Retry(total=1, allowed_methods=["GET"], backoff_factor=1, status_forcelist=[502, 503, 504])
_session = requests.Session()
_session.mount("https://", HTTPAdapter(max_retries=_retry))


def date_range(today: Optional[dt.date] = None) -> str:
    """``FIRST_YEAR:<current year>`` as the API's ``date`` parameter."""
    today = today or dt.date.today()
    return f"{FIRST_YEAR}:{today.year}"


def extract_indicator(url: str) -> Optional[str]:
    match = _INDICATOR_RE.search(url)
    return match.group(1) if match else None


def extract_country(url: str, default: str = DEFAULT_COUNTRY) -> str:
    match = _COUNTRY_RE.search(url)
    if match:
        return match.group(1).upper()
    match = _GEO_RE.search(url)
    if match:
        geo = match.group(1).upper()
        return GEO_TO_WB.get(geo, geo)
    return default


class WorldBankAdapter(DataAdapter):
    name = "worldbank"

    def can_handle(self, source_url: str) -> bool:
        return "worldbank.org" in source_url

    def _fetch_impl(self, config: AdapterConfig) -> List[ObservedPoint]:
        indicator = extract_indicator(config.source_url)
        if not indicator:
            return []

        country = extract_country(config.source_url)
        url = f"{WORLDBANK_API_URL}/country/{country}/indicator/{indicator}"
        params = {"format": "json", "per_page": 100, "date": date_range()}

        try:
            response = _session.get(url, params=params, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise DataSourceError(self.name, f"World Bank request failed: {e}", e) from e

        # [paging-metadata, [entries...]]
        if not isinstance(data, list) or len(data) < 2 or not isinstance(data[1], list):
            return []

        points = []
        for entry in data[1]:
            value = entry.get("value")
            try:
                year = int(str(entry.get("date", ""))[:4])
            except ValueError:
                continue
            if value is None:
                continue
            points.append(ObservedPoint(dt.date(year, 1, 1), float(value), f"World Bank {indicator}"))

        logger.debug(f"World Bank {indicator}/{country}: {len(points)} observations")
        return sorted(points, key=lambda p: p.date)
