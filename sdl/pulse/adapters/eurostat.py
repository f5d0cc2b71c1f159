"""Eurostat JSON Statistics API adapter.

Handles locators such as:
    https://ec.europa.eu/eurostat/databrowser/view/demo_frate
    https://ec.europa.eu/eurostat/api/dissemination/statistics/1.0/data/demo_frate?geo=FR
    https://ec.europa.eu/eurostat/api/demo_frate

Dataset-specific dimension filters are added automatically; without them
the API rejects most queries as too large.
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

EUROSTAT_API_URL = "https://ec.europa.eu/eurostat/api/dissemination/statistics/1.0/data"
DEFAULT_GEO = "IT"
REQUEST_TIMEOUT = (5, 15)

DATASET_PARAMS = {
    "demo_frate": {"indic_de": "TOTFERRT", "freq": "A"},
    "demo_pjan": {"age": "TOTAL", "sex": "T", "freq": "A"},
    "demo_pjanind": {"indic_de": "DEPRATIO1", "freq": "A"},
    "nrg_ind_ren": {"freq": "A", "unit": "PC", "nrg_bal": "REN"},
    "env_air_gge": {"airpol": "GHG", "src_crf": "TOTX4_MEMO", "unit": "MIO_T", "freq": "A"},
    "nrg_bal_c": {"freq": "A", "unit": "KTOE", "nrg_bal": "NRGSUP"},
    "nrg_pc_204": {"freq": "S", "product": "6000", "consom": "4161903", "tax": "I_TAX", "currency": "EUR"},
    "lfsi_emp_a": {"indic_em": "EMP_LFS", "age": "Y20-64", "sex": "T", "unit": "PC_POP", "freq": "A"},
    "une_rt_a": {"age": "Y_GE15", "sex": "T", "unit": "PC_ACT", "freq": "A"},
    "nama_10_gdp": {"na_item": "B1GQ", "unit": "CP_MEUR", "freq": "A"},
    "isoc_ci_ifp_iu": {"indic_is": "I_IUBK", "unit": "PC_IND", "freq": "A"},
    "isoc_cicce_use": {"indic_is": "E_CC", "sizen_r2": "10_C10_S951_XK", "unit": "PC_ENT", "freq": "A"},
    "isoc_ci_in_h": {"indic_is": "I_DSK_AB", "unit": "PC_IND", "freq": "A"},
}

GEO_ALIASES = {
    "italy": "IT", "france": "FR", "germany": "DE", "spain": "ES", "poland": "PL",
    "eu27": "EU27_2020", "eu28": "EU28", "eu": "EU27_2020",
}

_DATASET_PATTERNS = [
    re.compile(r"databrowser/view/(\w+)"),
    re.compile(r"/data/(\w+)"),
    re.compile(r"eurostat/api/(\w+)"),
    re.compile(r"eurostat.*?/view/(\w+)"),
]
_GEO_RE = re.compile(r"[?&]geo=([A-Z0-9_]+)", re.IGNORECASE)
_PATH_GEO_RE = re.compile(r"[/%]([a-z0-9]{2,5})(?:[/?#]|$)", re.IGNORECASE)

_retry = Retry(total=1, allowed_methods=["GET"], backoff_factor=1, status_forcelist=[502, 503, 504])
_session = requests.Session()
_session.mount("https://", HTTPAdapter(max_retries=_retry))


def extract_dataset_code(url: str) -> Optional[str]:
    for pattern in _DATASET_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def extract_geo(url: str, default: str = DEFAULT_GEO) -> str:
    match = _GEO_RE.search(url)
    if match:
        geo = match.group(1)
        return GEO_ALIASES.get(geo.lower(), geo.upper())
    for segment in _PATH_GEO_RE.findall(url):
        if segment.lower() in GEO_ALIASES:
            return GEO_ALIASES[segment.lower()]
    return default


class EurostatAdapter(DataAdapter):
    name = "eurostat"

    def can_handle(self, source_url: str) -> bool:
        return "eurostat" in source_url or "ec.europa.eu" in source_url

    def _fetch_impl(self, config: AdapterConfig) -> List[ObservedPoint]:
        dataset = extract_dataset_code(config.source_url)
        if not dataset:
            return []

        extra = DATASET_PARAMS.get(dataset, {"freq": "A"})
        params = {"geo": extract_geo(config.source_url), **extra}

        try:
            response = _session.get(f"{EUROSTAT_API_URL}/{dataset}", params=params, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise DataSourceError(self.name, f"Eurostat request failed: {e}", e) from e

        time_index = ((data.get("dimension") or {}).get("time") or {}).get("category", {}).get("index")
        values = data.get("value")
        if not time_index or not values:
            return []

        # nrg_bal_c is published in KTOE; fields asking for Mtoe need rescaling
        scale = 1.0
        if config.field and "mtoe" in config.field.lower() and extra.get("unit") == "KTOE":
            scale = 1 / 1000.0

        points = []
        for period, index in time_index.items():
            value = values.get(str(index))
            if value is None:
                continue
            try:
                year = int(period[:4])
            except ValueError:
                continue
            points.append(ObservedPoint(dt.date(year, 1, 1), float(value) * scale, f"Eurostat {dataset}"))

        logger.debug(f"Eurostat {dataset}: {len(points)} observations")
        return sorted(points, key=lambda p: p.date)
