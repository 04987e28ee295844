import os

import streamlit as st
import altair as alt
import pandas as pd

from sleek_portal.supabase_repo import SupabaseRepository
from sleek_portal.reporting import (
    ORDER_COLUMNS, orders_frame, status_board, margin_summary, batch_fill_frame, supplier_leaderboard,
)
from sleek_portal.batching import BatchEngine
from sleek_portal.utils import format_currency


def _bootstrap_env_from_streamlit_secrets():
    try:
        secrets_obj = st.secrets  # triggers load
        keys = list(secrets_obj.keys())
    except FileNotFoundError:
        return

    for key in ["SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_ANON_KEY"]:
        if key in keys and st.secrets.get(key):
            os.environ[key] = str(st.secrets.get(key))


_bootstrap_env_from_streamlit_secrets()

st.set_page_config(page_title="Sleek Apparels Admin", layout="wide")


@st.cache_data(ttl=300)
def fetch_board_data():
    repo = SupabaseRepository()
    orders = repo.select("orders", columns=",".join(ORDER_COLUMNS), order="created_at.desc", limit=1000)
    batches = repo.list_batches(["filling", "confirmed", "in_production"])
    suppliers = repo.list_suppliers(limit=200)
    return orders, batches, suppliers


with st.sidebar:
    st.title("Sleek Apparels")
    st.caption("Orders, batches and suppliers")
    if st.button("Refresh data"):
        fetch_board_data.clear()

error_container = st.empty()
try:
    order_rows, batches, suppliers = fetch_board_data()
except Exception as e:
    error_container.error(
        "Failed to load data from Supabase. Ensure SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are configured.\n" + str(e)
    )
    st.stop()

orders = orders_frame(order_rows)

# Headline metrics
summary = margin_summary(orders)
stats = BatchEngine.statistics(batches) if batches else None
m1, m2, m3, m4 = st.columns(4)
m1.metric("Orders", len(orders))
m2.metric("Assigned orders", summary["assigned_orders"])
m3.metric("Total margin", format_currency(summary["total_margin"]))
m4.metric("Avg batch fill", f"{stats['avgFillRate']:.0f}%" if stats else "-")

st.subheader("Order status board")
board = status_board(orders)
if board.empty:
    st.info("No orders yet.")
else:
    left, right = st.columns([2, 3])
    with left:
        st.dataframe(board, use_container_width=True, hide_index=True)
    with right:
        chart = alt.Chart(board).mark_bar().encode(
            x=alt.X("orders:Q", title="Orders"),
            y=alt.Y("status:N", sort=None, title=None),
            tooltip=["status", "orders", alt.Tooltip("total_margin:Q", format="$,.2f")],
        )
        st.altair_chart(chart, use_container_width=True)

st.subheader("Production batches")
fill = batch_fill_frame(batches)
if fill.empty:
    st.info("No active batches.")
else:
    bars = alt.Chart(fill).mark_bar().encode(
        x=alt.X("fill_pct:Q", title="Filled (%)", scale=alt.Scale(domain=[0, 100])),
        y=alt.Y("batch:N", sort="-x", title=None),
        color=alt.Color("status:N"),
        tooltip=["batch", "category", "status", "current", "target", "fill_pct"],
    )
    confirm_rule = alt.Chart(pd.DataFrame({"x": [75]})).mark_rule(strokeDash=[4, 4]).encode(x="x:Q")
    st.altair_chart(bars + confirm_rule, use_container_width=True)

st.subheader("Supplier leaderboard")
st.dataframe(supplier_leaderboard(suppliers), use_container_width=True, hide_index=True)
