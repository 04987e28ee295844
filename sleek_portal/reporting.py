"""
Tabular views over orders, batches and suppliers for the admin dashboard.
"""

from typing import Any, Dict, List
import pandas as pd
from .models import ORDER_WORKFLOW_STATUSES, Order, ProductionBatch, Supplier

ORDER_COLUMNS = [
    "id", "order_number", "product_type", "quantity", "workflow_status", "payment_status",
    "buyer_price", "supplier_price", "admin_margin", "margin_percentage", "created_at",
]

def orders_frame(rows: List[Dict[str, Any]]) -> pd.DataFrame:
    """Order rows as a frame, plus the derived broker `margin` of each order."""
    df = pd.DataFrame(rows, columns=ORDER_COLUMNS)
    df["margin"] = pd.Series([Order.from_dict(row).margin for row in rows], index=df.index, dtype="float64")
    for col in ("buyer_price", "supplier_price", "admin_margin", "margin_percentage", "quantity"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    return df

def status_board(orders: pd.DataFrame) -> pd.DataFrame:
    """Order count and total margin per workflow status, in workflow order."""
    grouped = (
        orders.groupby("workflow_status", dropna=True)
        .agg(orders=("id", "count"), total_margin=("margin", "sum"))
        .reindex(list(ORDER_WORKFLOW_STATUSES))
        .fillna(0)
    )
    grouped = grouped[grouped["orders"] > 0].copy()
    grouped["orders"] = grouped["orders"].astype(int)
    return grouped.rename_axis("status").reset_index()

def margin_summary(orders: pd.DataFrame) -> Dict[str, float]:
    priced = orders.dropna(subset=["margin"])
    return {
        "assigned_orders": int(len(priced)),
        "total_margin": float(priced["margin"].sum()) if len(priced) else 0.0,
        "avg_margin_pct": float(priced["margin_percentage"].mean()) if priced["margin_percentage"].notna().any() else 0.0,
    }

def batch_fill_frame(batches: List[ProductionBatch]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "batch": (b.id or "")[:8],
                "category": b.product_category,
                "status": b.batch_status,
                "current": b.current_quantity or 0,
                "target": b.target_quantity,
                "fill_pct": round(b.fill_percentage, 1),
            }
            for b in batches
        ],
        columns=["batch", "category", "status", "current", "target", "fill_pct"],
    )

def supplier_leaderboard(suppliers: List[Supplier], top: int = 10) -> pd.DataFrame:
    df = pd.DataFrame(
        [
            {
                "supplier": s.company_name,
                "country": s.country,
                "verified": s.is_verified,
                "performance_score": s.performance_score,
                "on_time_rate": s.on_time_delivery_rate,
                "orders_completed": s.total_orders_completed or 0,
            }
            for s in suppliers
        ],
        columns=["supplier", "country", "verified", "performance_score", "on_time_rate", "orders_completed"],
    )
    return df.sort_values("performance_score", ascending=False, na_position="last").head(top).reset_index(drop=True)
