"""
Configuration schema and loader.

This module defines dataclasses that mirror the expected structure of
the YAML configuration file (`config.yaml`).  A helper function
`load_config()` reads a YAML file from disk and returns an instance
of `Config` populated with reasonable defaults for any missing
fields.

Every indicator the bot knows how to trade (CPI, GDP, PCE, NFP and the
FOMC rate decision) is described by an `IndicatorConfig`.  The
indicators only differ in their threshold, offset and the source the
live value is read from; the decision logic is shared.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Dict, Any
import yaml


class ConfigurationError(ValueError):
    """Raised at startup when the configuration cannot be used."""


@dataclass
class IndicatorConfig:
    """Per-indicator trading parameters.

    Attributes
    ----------
    name : str
        Human readable indicator name used in logs and reports.
    event_id : str or None
        Identifier of the indicator in the historical events dataset.
        Events whose id does not map to an indicator are not traded.
    threshold : float
        Expected value of the indicator for live trading.  Backtests
        use the consensus stored with each historical event instead.
    offset : float
        Surprise size that corresponds to one unit of leverage.
    direct : bool
        ``True`` when a value above the threshold is bullish.  Every
        indicator shipped here is inverse (``False``).
    max_hold_seconds : float or None
        Maximum time to keep a position open.  ``None`` falls back to
        the global setting.
    url : str
        Page or endpoint the live value is read from.
    value_pattern : str
        Regular expression whose first group (or whole match) is the
        published value on the page at `url`.
    """

    name: str = ""
    event_id: Optional[str] = None
    threshold: float = 0.0
    offset: float = 1.0
    direct: bool = False
    max_hold_seconds: Optional[float] = None
    url: str = ""
    value_pattern: str = r"(-?\d+(?:\.\d+)?)"


@dataclass
class DataConfig:
    """Locations of historical data and backtest output.

    Attributes
    ----------
    events_path : str
        JSON array of historical indicator releases.
    prices_path : str
        Second-resolution OHLCV CSV (``timestamp,open,high,low,close,volume``).
    results_dir : str
        Directory receiving backtest results, statistics and charts.
    window_size : int
        Bytes read per binary search step over the price file.
    chunk_size : int
        Rows parsed per chunk when streaming bars from the price file.
    """

    events_path: str = "data/cleaned_history.json"
    prices_path: str = "data/btc_1s_klines.csv"
    results_dir: str = "results"
    window_size: int = 50_000
    chunk_size: int = 600


@dataclass
class LiveConfig:
    """Live trading loop settings."""

    indicator: str = "CPI"
    poll_interval_seconds: float = 1.0
    single_shot: bool = False
    proxyless: bool = False
    strategy_proxy_index: int = 0
    dry_run: bool = True
    broker: str = "paper"
    paper_price: float = 0.0
    request_timeout: float = 10.0
    state_file: str = "state.json"


@dataclass
class ProxyConfig:
    """Proxy listing API used for rotating indicator requests."""

    api_url: str = "https://proxy.webshare.io/api/v2/proxy/list"
    api_key: str = ""
    page_size: int = 25


@dataclass
class DownloadConfig:
    """Exchange klines download feeding `DataConfig.prices_path`.

    Attributes
    ----------
    base_url : str
        REST root of the exchange market data API.
    symbol : str
        Exchange symbol whose one-second klines are downloaded.
    limit : int
        Klines per request; one request covers `limit` seconds.
    parallel_downloads : int
        Segments fetched concurrently per batch, each through the next
        proxy of the rotation.
    start_time : str
        First timestamp downloaded when no progress file exists.
    progress_path : str
        JSON file recording where the next batch starts.
    max_retries : int
        Attempts per batch before the download is aborted.
    """

    base_url: str = "https://api.binance.com/api/v3"
    symbol: str = "BTCUSDT"
    limit: int = 1000
    parallel_downloads: int = 20
    start_time: str = "2020-11-30T05:59:59Z"
    progress_path: str = "data/progress.json"
    max_retries: int = 3


@dataclass
class MT5Config:
    """Holds parameters required to connect to a MetaTrader 5 terminal.

    Attributes
    ----------
    login : int
        Account login number.
    password : str
        Password for the account.
    server : str
        Broker server name (e.g. ``Bidget-MT5-Live``).
    path : str
        File system path to the MetaTrader 5 terminal executable
        (`terminal64.exe`).
    symbol : str
        Instrument traded on release of the indicator.
    deviation : int
        Maximum accepted slippage for market deals, in points.
    magic : int
        Expert id stamped on every order sent by the bot.
    """

    login: int = 0
    password: str = ""
    server: str = ""
    path: str = ""
    symbol: str = "BTCUSD"
    deviation: int = 20
    magic: int = 240_501


def default_indicators() -> Dict[str, IndicatorConfig]:
    return {
        'CPI': IndicatorConfig(
            name="CPI",
            event_id="6f846eaa-9a12-43ab-930d-f059069c6646",
            threshold=0.5,
            offset=0.02,
            url="https://data.bls.gov/timeseries/CUSR0000SA0&output_view=pct_1mth",
        ),
        'GDP': IndicatorConfig(
            name="GDP",
            threshold=1.3,
            offset=0.2,
            url="https://www.bea.gov/data/gdp/gross-domestic-product",
        ),
        'PCE': IndicatorConfig(
            name="PCE",
            threshold=2.6,
            offset=0.1,
            url="https://www.bea.gov/data/personal-consumption-expenditures-price-index",
        ),
        'NFP': IndicatorConfig(
            name="NFP",
            event_id="9cdf56fd-99e4-4026-aa99-2b6c0ca92811",
            threshold=175_000,
            offset=15_000,
            url="https://www.bls.gov/news.release/empsit.nr0.htm",
            value_pattern=r"(-?\d[\d,]*)",
        ),
        'FOMC': IndicatorConfig(
            name="FOMC",
            event_id="fcfae951-09a7-449e-b6fe-525e1335aaba",
            threshold=5.5,
            offset=0.02,
            url="https://www.federalreserve.gov/monetarypolicy/openmarket.htm",
        ),
    }


@dataclass
class Config:
    """Root configuration for the trading program.

    Attributes
    ----------
    indicators : Dict[str, IndicatorConfig]
        Tradable indicators keyed by selector (``CPI``, ``NFP``...).
    base_amount : float
        Quote-currency notional of one unit of leverage.
    max_position_size : float
        Largest notional ever opened; caps leverage at
        ``floor(max_position_size / base_amount)``.
    sl_pct : float
        Stop‑loss expressed as a fraction of the entry price.
    tp_pct : float
        Take‑profit expressed as a fraction of the entry price.
    no_movement_return_threshold_pct : float
        Favourable move required within the grace period to keep a
        position open.
    no_movement_grace_seconds : float
        Seconds after entry at which the no-movement rule is applied.
    max_hold_seconds : float or None
        Hard maximum holding time.  ``None`` disables the rule.
    same_bar_priority : str
        ``take_profit`` or ``stop_loss``: which exit wins when one bar
        touches both levels.
    no_movement_policy : str
        ``cumulative`` closes a position that has not crossed the return
        threshold on any bar since entry; ``per_bar`` closes it on every
        bar past the grace period that stays short of the threshold.
    mode : str
        Operating mode: ``backtest`` or ``live``.
    """

    indicators: Dict[str, IndicatorConfig] = field(default_factory=default_indicators)
    base_amount: float = 200_000.0
    max_position_size: float = 1_000_000.0
    sl_pct: float = 0.002
    tp_pct: float = 0.02
    no_movement_return_threshold_pct: float = 0.0015
    no_movement_grace_seconds: float = 10.0
    max_hold_seconds: Optional[float] = None
    same_bar_priority: str = "take_profit"
    no_movement_policy: str = "cumulative"
    mode: str = "backtest"
    data: DataConfig = field(default_factory=DataConfig)
    live: LiveConfig = field(default_factory=LiveConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    mt5: MT5Config = field(default_factory=MT5Config)

    def indicator_for_event(self, event_id: Optional[str]) -> Optional[IndicatorConfig]:
        """Return the indicator configured for a historical event id."""
        if event_id is None:
            return None
        for indicator in self.indicators.values():
            if indicator.event_id == event_id:
                return indicator
        return None

    def hold_limit(self, indicator: IndicatorConfig) -> Optional[float]:
        if indicator.max_hold_seconds is not None:
            return indicator.max_hold_seconds
        return self.max_hold_seconds


def resolve_indicator(config: Config, selector: str) -> IndicatorConfig:
    """Look up the indicator chosen by `selector` (case-insensitive).

    Raises
    ------
    ConfigurationError
        If the selector does not name a configured indicator.
    """
    key = selector.strip().upper()
    indicator = config.indicators.get(key)
    if indicator is None:
        raise ConfigurationError(
            f"Unsupported indicator {selector!r}. Expected one of: {sorted(config.indicators)}"
        )
    return indicator


def _merge_dict(defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge two dictionaries.

    The values in `override` take precedence over those in `defaults`.
    This helper is used when loading YAML into nested dataclasses.
    """
    result: Dict[str, Any] = defaults.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def _build_indicators(raw: Dict[str, Any]) -> Dict[str, IndicatorConfig]:
    indicators: Dict[str, IndicatorConfig] = {}
    for key, values in raw.items():
        if not isinstance(values, dict):
            raise ConfigurationError(f"Indicator {key!r} must be a mapping, got {values!r}")
        values = dict(values)
        values.setdefault('name', str(key).upper())
        try:
            indicator = IndicatorConfig(**values)
        except TypeError as exc:
            raise ConfigurationError(f"Invalid settings for indicator {key!r}: {exc}") from exc
        indicator.threshold = float(indicator.threshold)
        indicator.offset = float(indicator.offset)
        indicator.max_hold_seconds = _optional_float(indicator.max_hold_seconds)
        if indicator.offset <= 0:
            raise ConfigurationError(f"Indicator {key!r} needs a positive offset")
        indicators[str(key).upper()] = indicator
    return indicators


def load_config(path: str) -> Config:
    """Load a configuration file from the given YAML path.

    Parameters
    ----------
    path : str
        Path to the YAML file.

    Returns
    -------
    Config
        A populated configuration object.  Missing fields are filled with
        sensible defaults defined in the dataclasses.

    Raises
    ------
    ConfigurationError
        If the file contains values that cannot be turned into a
        configuration (unknown keys, bad indicator definitions, unknown
        live indicator selector).
    """
    with open(path, "r", encoding="utf-8") as fh:
        raw: Dict[str, Any] = yaml.safe_load(fh) or {}

    # Build nested dictionaries representing the default dataclasses
    defaults: Dict[str, Any] = {
        'indicators': {key: vars(ind).copy() for key, ind in default_indicators().items()},
        'base_amount': 200_000.0,
        'max_position_size': 1_000_000.0,
        'sl_pct': 0.002,
        'tp_pct': 0.02,
        'no_movement_return_threshold_pct': 0.0015,
        'no_movement_grace_seconds': 10.0,
        'max_hold_seconds': None,
        'same_bar_priority': 'take_profit',
        'no_movement_policy': 'cumulative',
        'mode': 'backtest',
        'data': vars(DataConfig()).copy(),
        'live': vars(LiveConfig()).copy(),
        'proxy': vars(ProxyConfig()).copy(),
        'download': vars(DownloadConfig()).copy(),
        'mt5': vars(MT5Config()).copy(),
    }

    merged = _merge_dict(defaults, raw)

    try:
        data_cfg = DataConfig(**merged['data'])
        live_cfg = LiveConfig(**merged['live'])
        proxy_cfg = ProxyConfig(**merged['proxy'])
        download_cfg = DownloadConfig(**merged['download'])
        mt5_cfg = MT5Config(**merged['mt5'])
    except TypeError as exc:
        raise ConfigurationError(f"Invalid configuration section: {exc}") from exc

    priority = str(merged.get('same_bar_priority', 'take_profit')).lower()
    if priority not in ('take_profit', 'stop_loss'):
        raise ConfigurationError(f"same_bar_priority must be 'take_profit' or 'stop_loss', got {priority!r}")
    policy = str(merged.get('no_movement_policy', 'cumulative')).lower()
    if policy not in ('cumulative', 'per_bar'):
        raise ConfigurationError(f"no_movement_policy must be 'cumulative' or 'per_bar', got {policy!r}")

    cfg = Config(
        indicators=_build_indicators(merged['indicators']),
        base_amount=float(merged.get('base_amount', 200_000.0)),
        max_position_size=float(merged.get('max_position_size', 1_000_000.0)),
        sl_pct=float(merged.get('sl_pct', 0.002)),
        tp_pct=float(merged.get('tp_pct', 0.02)),
        no_movement_return_threshold_pct=float(merged.get('no_movement_return_threshold_pct', 0.0015)),
        no_movement_grace_seconds=float(merged.get('no_movement_grace_seconds', 10.0)),
        max_hold_seconds=_optional_float(merged.get('max_hold_seconds')),
        same_bar_priority=priority,
        no_movement_policy=policy,
        mode=str(merged.get('mode', 'backtest')).lower(),
        data=data_cfg,
        live=live_cfg,
        proxy=proxy_cfg,
        download=download_cfg,
        mt5=mt5_cfg,
    )
    if cfg.base_amount <= 0:
        raise ConfigurationError("base_amount must be positive")
    # Fail fast on a live selector that names nothing
    resolve_indicator(cfg, cfg.live.indicator)
    return cfg
