"""YAML configuration loader for the reconciliation ledger.

Loads the seed config files from the config/ directory:
  matching.yaml, sources.yaml
"""

from pathlib import Path

import yaml

from src.database.fingerprint import SimilaritySettings

DEFAULT_BANK_SOURCES = ("bank-feed", "card-feed")
DEFAULT_PLATFORM_SOURCES = ("payment-platform",)


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._matching: dict | None = None
        self._sources: dict | None = None

    def _load(self, filename: str) -> dict:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        if not isinstance(data, dict):
            raise ValueError(f"Expected a mapping at the top of {path}")
        return data

    @property
    def matching(self) -> dict:
        if self._matching is None:
            self._matching = self._load("matching.yaml")
        return self._matching

    @property
    def sources(self) -> dict:
        if self._sources is None:
            self._sources = self._load("sources.yaml")
        return self._sources

    # ── Matching ──────────────────────────────────────────

    def similarity_settings(self) -> SimilaritySettings:
        """Build SimilaritySettings from matching.yaml, falling back to defaults."""
        section = self.matching.get("similarity", {}) or {}
        weights = section.get("weights", {}) or {}
        defaults = SimilaritySettings()
        settings = SimilaritySettings(
            amount_weight=float(weights.get("amount", defaults.amount_weight)),
            date_weight=float(weights.get("date", defaults.date_weight)),
            description_weight=float(
                weights.get("description", defaults.description_weight)
            ),
            window_days=int(section.get("window_days", defaults.window_days)),
            auto_reject_threshold=float(
                section.get("auto_reject_threshold", defaults.auto_reject_threshold)
            ),
            review_threshold=float(
                section.get("review_threshold", defaults.review_threshold)
            ),
        )
        if settings.review_threshold > settings.auto_reject_threshold:
            raise ValueError(
                "review_threshold must not exceed auto_reject_threshold"
                f" ({settings.review_threshold} > {settings.auto_reject_threshold})"
            )
        if settings.window_days < 0:
            raise ValueError(f"window_days must be >= 0, got {settings.window_days}")
        return settings

    @property
    def similarity_auto_reject(self) -> bool:
        """Whether near-certain similarity matches are dropped as exact duplicates."""
        section = self.matching.get("similarity", {}) or {}
        return bool(section.get("similarity_auto_reject", True))

    @property
    def cross_source_window_days(self) -> int:
        section = self.matching.get("cross_source", {}) or {}
        return int(section.get("window_days", 3))

    @property
    def sweep_chunk_size(self) -> int:
        section = self.matching.get("sweep", {}) or {}
        return int(section.get("chunk_size", 200))

    @property
    def sweep_after_batch(self) -> bool:
        section = self.matching.get("sweep", {}) or {}
        return bool(section.get("after_batch", True))

    @property
    def reconcile_chunk_size(self) -> int:
        section = self.matching.get("reconcile", {}) or {}
        return int(section.get("chunk_size", 200))

    @property
    def reconcile_after_batch(self) -> bool:
        """Reconcile every user a batch touched once the batch is in."""
        section = self.matching.get("reconcile", {}) or {}
        return bool(section.get("after_batch", True))

    # ── Sources ───────────────────────────────────────────

    @property
    def bank_sources(self) -> tuple[str, ...]:
        """Sources whose records actually move money (bank and card feeds)."""
        return tuple(self.sources.get("bank_sources", DEFAULT_BANK_SOURCES))

    @property
    def platform_sources(self) -> tuple[str, ...]:
        """Merchant-level sources reconciled against bank records."""
        return tuple(self.sources.get("platform_sources", DEFAULT_PLATFORM_SOURCES))

    @property
    def default_currency(self) -> str:
        return str(self.sources.get("default_currency", "EUR")).upper()

    @property
    def currency_exponents(self) -> dict[str, int]:
        """Map ISO-4217 code → minor-unit exponent (e.g. JPY → 0)."""
        raw = self.sources.get("currency_exponents", {}) or {}
        return {str(code).upper(): int(exp) for code, exp in raw.items()}
