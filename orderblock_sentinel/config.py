from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import math
import os
import yaml

from .errors import InvalidConfiguration


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


def _env_list(env_key: str) -> Optional[List[str]]:
    raw = os.getenv(env_key)
    if not raw:
        return None
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass
class AppConfig:
    name: str = "Order Block Sentinel"
    log_level: str = "INFO"


@dataclass
class ProviderConfig:
    type: str = "binance"
    market: str = "spot"  # futures|spot
    rest_timeout_s: int = 20
    ws_heartbeat_s: int = 20
    fetch_concurrency: int = 5


@dataclass
class TradingConfig:
    symbols: List[str] = field(default_factory=list)
    timeframes: List[str] = field(default_factory=lambda: ["15m", "1h", "4h", "1d"])
    lookback_bars: int = 100
    min_candles: int = 10
    min_block_pips: float = 10.0
    confirmation_bars: int = 3
    max_concurrent_pairs: int = 5
    scan_interval_s: int = 15
    default_pip_size: float = 0.0001
    pip_sizes: Dict[str, float] = field(default_factory=dict)

    def pip_size(self, symbol: str) -> float:
        sym = symbol.upper()
        if sym in self.pip_sizes:
            return float(self.pip_sizes[sym])
        if sym.endswith("JPY"):
            return 0.01
        return float(self.default_pip_size)


@dataclass
class DetectorConfig:
    body_ratio_min: float = 0.70
    swing_strength: int = 2
    origin_search_bars: int = 5
    touch_tolerance_pips: float = 2.0
    min_touches: int = 2
    max_block_age_hours: float = 168.0
    max_blocks_per_catalog: int = 50
    atr_len: int = 14
    volume_avg_len: int = 20
    strength_volume_cap: float = 2.0
    strength_atr_cap: float = 2.0
    strength_volume_weight: float = 0.5
    strength_atr_weight: float = 0.5
    strength_half_life_hours: float = 72.0


@dataclass
class ScoringWeights:
    volatility: float = 0.25
    momentum: float = 0.30
    trend_strength: float = 0.25
    liquidity: float = 0.20

    def total(self) -> float:
        return self.volatility + self.momentum + self.trend_strength + self.liquidity


@dataclass
class ScoringConfig:
    timeframe: str = "1h"
    lookback_bars: int = 100
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    atr_len: int = 14
    ma_len: int = 20
    adx_len: int = 14
    volatility_cap_ratio: float = 2.0
    momentum_cap_atr: float = 3.0
    abnormal_spread_ratio: float = 3.0
    thin_volume_ratio: float = 0.3
    recent_volume_bars: int = 5
    spread_history: int = 500
    typical_spread_pips: Dict[str, float] = field(default_factory=dict)

    def min_bars(self) -> int:
        return max(2 * self.adx_len + 1, self.atr_len + 1, self.ma_len)


@dataclass
class SignalConfig:
    min_confidence: float = 0.40
    min_risk_reward: float = 1.5
    sl_buffer_pips: float = 2.0
    confidence_half_life_hours: float = 48.0
    max_block_age_hours: float = 168.0
    confluence_bonus: float = 0.10
    max_confluence_bonus: float = 0.20
    signal_ttl_minutes: int = 240


@dataclass
class TelegramConfig:
    enabled: bool = True
    token: str = ""
    chat_ids: List[str] = field(default_factory=list)
    disable_web_page_preview: bool = True
    parse_mode: str = "HTML"  # HTML | MarkdownV2


@dataclass
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    trading: TradingConfig = field(default_factory=TradingConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    signals: SignalConfig = field(default_factory=SignalConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    scoring = dict(raw.get("scoring", {}) or {})
    weights = ScoringWeights(**(scoring.pop("weights", None) or {}))

    cfg = Config(
        app=AppConfig(**(raw.get("app") or {})),
        provider=ProviderConfig(**(raw.get("provider") or {})),
        trading=TradingConfig(**(raw.get("trading") or {})),
        detector=DetectorConfig(**(raw.get("detector") or {})),
        scoring=ScoringConfig(weights=weights, **scoring),
        signals=SignalConfig(**(raw.get("signals") or {})),
        telegram=TelegramConfig(**(raw.get("telegram") or {})),
    )

    cfg.trading.symbols = [s.strip().upper() for s in (cfg.trading.symbols or []) if s and s.strip()]
    cfg.trading.pip_sizes = {k.upper(): float(v) for k, v in (cfg.trading.pip_sizes or {}).items()}

    # env overrides (useful on servers)
    cfg.app.log_level = _env_override(cfg.app.log_level, "SENTINEL_LOG_LEVEL")
    cfg.telegram.token = _env_override(cfg.telegram.token, "TELEGRAM_TOKEN")
    chat_env = _env_list("TELEGRAM_CHAT_IDS")
    if chat_env:
        cfg.telegram.chat_ids = chat_env
    symbols_env = _env_list("SENTINEL_SYMBOLS")
    if symbols_env:
        cfg.trading.symbols = [s.upper() for s in symbols_env]

    return cfg


def _check_range(errs: List[str], name: str, value: float, lo: float, hi: float) -> None:
    if value is None or not (lo <= value <= hi):
        errs.append(f"{name}={value} outside [{lo}, {hi}]")


def validate_config(cfg: Config) -> None:
    """Raise InvalidConfiguration listing every out-of-range parameter."""
    errs: List[str] = []
    t = cfg.trading

    if not t.symbols:
        errs.append("trading.symbols must not be empty")
    if len(set(t.symbols)) != len(t.symbols):
        errs.append("trading.symbols contains duplicates")
    if not t.timeframes:
        errs.append("trading.timeframes must not be empty")
    for tf in t.timeframes or []:
        try:
            timeframe_minutes(tf)
        except ValueError as e:
            errs.append(str(e))

    _check_range(errs, "trading.lookback_bars", t.lookback_bars, 10, 200)
    _check_range(errs, "trading.min_candles", t.min_candles, 10, 200)
    if t.min_candles > t.lookback_bars:
        errs.append(f"trading.min_candles={t.min_candles} exceeds lookback_bars={t.lookback_bars}")
    _check_range(errs, "trading.min_block_pips", t.min_block_pips, 5, 100)
    _check_range(errs, "trading.confirmation_bars", t.confirmation_bars, 1, 10)
    _check_range(errs, "trading.max_concurrent_pairs", t.max_concurrent_pairs, 1, 28)
    _check_range(errs, "trading.scan_interval_s", t.scan_interval_s, 1, 60)
    if t.default_pip_size <= 0:
        errs.append("trading.default_pip_size must be > 0")
    for sym, ps in (t.pip_sizes or {}).items():
        if ps <= 0:
            errs.append(f"trading.pip_sizes.{sym} must be > 0")

    d = cfg.detector
    _check_range(errs, "detector.body_ratio_min", d.body_ratio_min, 0.0, 1.0)
    _check_range(errs, "detector.swing_strength", d.swing_strength, 1, 10)
    _check_range(errs, "detector.origin_search_bars", d.origin_search_bars, 1, 20)
    _check_range(errs, "detector.min_touches", d.min_touches, 1, 20)
    if d.touch_tolerance_pips < 0:
        errs.append("detector.touch_tolerance_pips must be >= 0")
    if d.max_block_age_hours <= 0:
        errs.append("detector.max_block_age_hours must be > 0")
    if d.max_blocks_per_catalog < 1:
        errs.append("detector.max_blocks_per_catalog must be >= 1")
    if d.strength_volume_cap <= 0 or d.strength_atr_cap <= 0:
        errs.append("detector strength caps must be > 0")
    if not math.isclose(d.strength_volume_weight + d.strength_atr_weight, 1.0, abs_tol=1e-9):
        errs.append("detector strength weights must sum to 1.0")

    s = cfg.scoring
    try:
        timeframe_minutes(s.timeframe)
    except ValueError as e:
        errs.append(str(e))
    w = s.weights
    for name in ("volatility", "momentum", "trend_strength", "liquidity"):
        if getattr(w, name) < 0:
            errs.append(f"scoring.weights.{name} must be >= 0")
    if not math.isclose(w.total(), 1.0, abs_tol=1e-9):
        errs.append(f"scoring.weights must sum to 1.0 (got {w.total():.6f})")
    if s.lookback_bars < s.min_bars():
        errs.append(f"scoring.lookback_bars={s.lookback_bars} below required {s.min_bars()}")
    if s.volatility_cap_ratio <= 0 or s.momentum_cap_atr <= 0:
        errs.append("scoring caps must be > 0")
    if s.abnormal_spread_ratio <= 1:
        errs.append("scoring.abnormal_spread_ratio must be > 1")
    _check_range(errs, "scoring.thin_volume_ratio", s.thin_volume_ratio, 0.0, 1.0)

    g = cfg.signals
    _check_range(errs, "signals.min_confidence", g.min_confidence, 0.0, 1.0)
    if g.min_risk_reward <= 0:
        errs.append("signals.min_risk_reward must be > 0")
    if g.sl_buffer_pips < 0:
        errs.append("signals.sl_buffer_pips must be >= 0")
    if g.max_block_age_hours <= 0:
        errs.append("signals.max_block_age_hours must be > 0")
    if g.signal_ttl_minutes <= 0:
        errs.append("signals.signal_ttl_minutes must be > 0")

    if errs:
        raise InvalidConfiguration(errs)


def timeframe_minutes(tf: str) -> int:
    """Minutes per bar for '15m'/'1h'/'1d' or 'M15'/'H1'/'D1' style timeframes."""
    raw = (tf or "").strip()
    low = raw.lower()
    try:
        if low.endswith("m") and low[:-1].isdigit():
            return int(low[:-1])
        if low.endswith("h") and low[:-1].isdigit():
            return int(low[:-1]) * 60
        if low.endswith("d") and low[:-1].isdigit():
            return int(low[:-1]) * 1440
        up = raw.upper()
        if up[:1] == "M" and up[1:].isdigit():
            return int(up[1:])
        if up[:1] == "H" and up[1:].isdigit():
            return int(up[1:]) * 60
        if up[:1] == "D" and up[1:].isdigit():
            return int(up[1:]) * 1440
    except ValueError:
        pass
    raise ValueError(f"Unsupported timeframe: {tf}")
