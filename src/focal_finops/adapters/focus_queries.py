"""FOCUS billing queries used by the cached dashboards and the anomaly session.

All statements run against a single FOCUS view (``Settings.focus_table_name``)
with the FinOps Open Cost and Usage Specification column names:

    BilledCost, EffectiveCost, UsageQuantity
    ResourceId, ResourceName, ResourceType
    ServiceName, ServiceCategory, RegionName
    ChargePeriodStart, ChargePeriodEnd

Date bounds are rendered as ISO-8601 literals after validation, so callers
can only influence the SQL through typed values.
"""

from datetime import date, datetime


def _literal(value: date | datetime) -> str:
    return f"TIMESTAMP '{value.isoformat(sep=' ') if isinstance(value, datetime) else value.isoformat()}'"


def _table(name: str) -> str:
    if not name.replace("_", "").isalnum():
        raise ValueError(f"Invalid FOCUS table name: {name!r}")
    return name


def anomaly_input_sql(table: str, start: datetime, end: datetime) -> str:
    """Daily billed cost per resource, the input series for anomaly detection."""
    return f"""
SELECT
    ResourceId,
    ServiceName,
    CAST(ChargePeriodStart AS DATE) AS ChargeDate,
    CAST(SUM(BilledCost) AS DOUBLE) AS DailyCost
FROM {_table(table)}
WHERE ChargePeriodStart >= {_literal(start)}
  AND ChargePeriodEnd < {_literal(end)}
  AND ResourceId IS NOT NULL
  AND ResourceId != ''
GROUP BY ResourceId, ServiceName, CAST(ChargePeriodStart AS DATE)
ORDER BY ResourceId, ChargeDate
""".strip()


def daily_costs_sql(table: str, start: date, end: date) -> str:
    """Daily cost totals between two dates (inclusive start, exclusive end)."""
    return f"""
SELECT
    CAST(ChargePeriodStart AS DATE) AS date,
    CAST(SUM(BilledCost) AS DOUBLE) AS total,
    CAST(SUM(BilledCost) AS DOUBLE) AS billedCost,
    CAST(SUM(EffectiveCost) AS DOUBLE) AS effectiveCost,
    CAST(SUM(UsageQuantity) AS DOUBLE) AS usageQuantity
FROM {_table(table)}
WHERE ChargePeriodStart >= {_literal(start)}
  AND ChargePeriodStart < {_literal(end)}
GROUP BY CAST(ChargePeriodStart AS DATE)
ORDER BY date
""".strip()


def service_breakdown_sql(table: str, start: date, end: date) -> str:
    """Cost per service with its share of the period total."""
    return f"""
SELECT
    ServiceName AS serviceName,
    ServiceCategory AS serviceCategory,
    CAST(SUM(BilledCost) AS DOUBLE) AS cost,
    CAST(SUM(BilledCost) * 100.0 / SUM(SUM(BilledCost)) OVER () AS DOUBLE) AS percentage
FROM {_table(table)}
WHERE ChargePeriodStart >= {_literal(start)}
  AND ChargePeriodStart < {_literal(end)}
GROUP BY ServiceName, ServiceCategory
ORDER BY cost DESC
""".strip()


def kpi_sql(table: str) -> str:
    """Headline KPIs: total cost, top service and resource count."""
    return f"""
SELECT
    CAST(SUM(BilledCost) AS DOUBLE) AS totalCost,
    COUNT(DISTINCT ResourceId) AS resourceCount,
    (
        SELECT ServiceName FROM {_table(table)}
        GROUP BY ServiceName ORDER BY SUM(BilledCost) DESC LIMIT 1
    ) AS topService,
    (
        SELECT CAST(SUM(BilledCost) AS DOUBLE) FROM {_table(table)}
        GROUP BY ServiceName ORDER BY SUM(BilledCost) DESC LIMIT 1
    ) AS topServiceCost
FROM {_table(table)}
""".strip()


__all__ = [
    "anomaly_input_sql",
    "daily_costs_sql",
    "kpi_sql",
    "service_breakdown_sql",
]
