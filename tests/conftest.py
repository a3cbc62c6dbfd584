"""Shared test fixtures for Realm."""

from __future__ import annotations

from pathlib import Path

import pytest

from realm.config import CompressionConfig, Config, LoggingConfig, LoopConfig, RetryConfig

SOURCE_TEXT = """\
# Extracted record

## [CBC Report 2019] - Page 1
Collected: 2019-03-12
| Hemoglobin | 12.3 *L | 13.5-17.5 | g/dL |
WBC: 5.2 x10^9/L

## [Thyroid Panel 2021]
Date: March 5, 2021
TSH: 2.3 mIU/L
| TSH | 2.3 | 0.4-4.0 | mIU/L |

## [Metabolic Panel 2024]
Collected 2024-07-15
| HbA1c | 5.7 *H | 4.0-5.6 | % |
Glucose: 105 mg/dL
Homocysteine: 20.08 umol/L
"""


@pytest.fixture
def source_text() -> str:
    """Three documents dated 2019, 2021 and 2024."""
    return SOURCE_TEXT


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Provide a test configuration with no delays and temp paths."""
    return Config(
        loop=LoopConfig(max_iterations=10, max_consecutive_failures=2, inter_call_delay_seconds=0),
        retry=RetryConfig(max_retries=2, base_multiplier=0.0, min_wait=0.0),
        compression=CompressionConfig(),
        logging=LoggingConfig(event_log_path=str(tmp_path / "logs")),
    )
