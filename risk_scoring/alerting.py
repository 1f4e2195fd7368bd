"""
Risk Scoring - Alert Construction.

============================================================
PURPOSE
============================================================
Turns a detected risk into the Alert record published on
the alerts topic. Lifecycle after publication (acknowledge,
resolve, notify) belongs to the downstream alert service.

============================================================
"""

import time
from typing import Optional

from chain_ingestion.models import Transaction
from risk_scoring.detector import RISK_TYPE_TEXT
from risk_scoring.types import Alert, RiskResult, RiskType


def alert_id(tx_hash: str, now_ns: Optional[int] = None) -> str:
    return f"alert_{tx_hash}_{now_ns if now_ns is not None else time.time_ns()}"


def build_alert(tx: Transaction, result: RiskResult, now_ns: Optional[int] = None) -> Alert:
    """
    Build the alert for an analyzed transaction.

    Args:
        tx: The transaction that was scored
        result: Detector output
        now_ns: Override for the id suffix (tests)

    Returns:
        Alert with status ACTIVE
    """
    risk_type = result.risk_type or RiskType.GENERAL
    title = result.title
    description = result.description
    if not title:
        title, description = RISK_TYPE_TEXT[risk_type]

    return Alert(
        id=alert_id(tx.hash, now_ns),
        type=risk_type,
        level=result.level,
        title=title,
        description=description,
        tx_hash=tx.hash,
        address=tx.from_address,
        network=tx.network,
        risk_score=result.score,
        risk_factors=result.factors,
        timestamp=tx.timestamp,
        metadata={
            "block_number": tx.block_number,
            "value": str(tx.value),
            "gas_price": str(tx.gas_price),
            "to_address": tx.to_address,
        },
    )
