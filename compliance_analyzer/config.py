"""Runtime configuration.

Values come from environment variables; an optional YAML rules file adds
category label aliases and exact-rule assignments.  Example rules file::

    category_labels:
      "Chat Flow": general
    exact_rules:
      - guideline: "Reply quickly"     # guideline id or title
        kind: reply_time
        threshold: 5
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

import yaml

from .models import Category

log = logging.getLogger(__name__)

OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
MODEL_NAME = os.getenv("MODEL_NAME", "llama3.1:70b")
ANALYSIS_TIMEOUT_S = float(os.getenv("ANALYSIS_TIMEOUT_S", "300"))
ANALYSIS_MAX_RETRIES = int(os.getenv("ANALYSIS_MAX_RETRIES", "3"))
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "0"))  # 0 = derive from MAX_INPUT_CHARS
MAX_INPUT_CHARS = int(os.getenv("MAX_INPUT_CHARS", "24000"))
INTER_CALL_DELAY_S = float(os.getenv("INTER_CALL_DELAY_S", "1.0"))
RULES_CONFIG_PATH = os.getenv("RULES_CONFIG_PATH", "/config/rules.yaml")
TRUST_EXACT_ZERO = os.getenv("TRUST_EXACT_ZERO", "0") in {"1", "true", "True", "yes"}

# Guideline category labels seen in upstream data, lowercased.  Covers the
# current display names and the legacy labels still present in older records.
DEFAULT_CATEGORY_LABELS: dict[str, Category] = {
    "general": Category.GENERAL,
    "general chatting": Category.GENERAL,
    "language": Category.GENERAL,
    "professionalism": Category.GENERAL,
    "messaging": Category.GENERAL,
    "psychology": Category.PSYCHOLOGY,
    "engagement": Category.PSYCHOLOGY,
    "captions": Category.CAPTIONS,
    "sales": Category.SALES,
}


@dataclass
class RulesConfig:
    category_labels: dict[str, Category] = field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_LABELS)
    )
    exact_rules: list[dict] = field(default_factory=list)


@dataclass
class PipelineConfig:
    """Knobs for one pipeline run."""

    batch_size: int = BATCH_SIZE
    max_input_chars: int = MAX_INPUT_CHARS
    inter_call_delay_s: float = INTER_CALL_DELAY_S
    trust_exact_zero: bool = TRUST_EXACT_ZERO


def load_rules_config(path: str = RULES_CONFIG_PATH) -> RulesConfig:
    """Load the YAML rules file at *path*, falling back to defaults if absent."""
    config = RulesConfig()
    if not os.path.exists(path):
        log.warning("rules file not found at path=%s -- using default category labels, no exact rules", path)
        return config

    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}

    for label, value in (raw.get("category_labels") or {}).items():
        try:
            config.category_labels[str(label).strip().lower()] = Category(str(value).strip().lower())
        except ValueError:
            log.warning("rules file: unknown category %r for label %r -- skipped", value, label)

    rules = raw.get("exact_rules") or []
    config.exact_rules = [r for r in rules if isinstance(r, dict)]
    log.info("rules file loaded: labels=%d exact_rules=%d path=%s",
             len(config.category_labels), len(config.exact_rules), path)
    return config
