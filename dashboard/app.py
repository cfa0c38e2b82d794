"""Streamlit operator dashboard for the FleetSlot allocation engine."""

from __future__ import annotations

import datetime
import os
from typing import Any, Dict, List, Optional

import pandas as pd
import requests
import streamlit as st

# ==========================================
# Configuration & Constants
# ==========================================
API_BASE_URL = os.environ.get("FLEETSLOT_API_URL", "http://127.0.0.1:8000")

st.set_page_config(
    page_title="FleetSlot Dashboard",
    page_icon="🚗",
    layout="wide",
)


# ==========================================
# API Helper Functions
# ==========================================
def _error_detail(exc: requests.exceptions.RequestException) -> str:
    response = getattr(exc, "response", None)
    if response is not None:
        try:
            return str(response.json().get("detail", exc))
        except ValueError:
            return str(exc)
    return str(exc)


def fetch_summary() -> Optional[Dict[str, Any]]:
    try:
        response = requests.get(f"{API_BASE_URL}/summary", timeout=5)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        st.error(f"Backend connection failed: {_error_detail(e)}")
        return None


def fetch_materials() -> List[Dict[str, Any]]:
    try:
        response = requests.get(f"{API_BASE_URL}/materials", timeout=5)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        st.error(f"Could not load materials: {_error_detail(e)}")
        return []


def fetch_availability(material_ids: List[str]) -> List[Dict[str, Any]]:
    if not material_ids:
        return []
    try:
        response = requests.post(
            f"{API_BASE_URL}/availability",
            json={"material_ids": material_ids},
            timeout=5,
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        st.error(f"Could not load availability: {_error_detail(e)}")
        return []


def post_reserve(
    campaign_id: str,
    material_ids: List[str],
    start_time: datetime.datetime,
    end_time: datetime.datetime,
) -> Optional[Dict[str, Any]]:
    try:
        response = requests.post(
            f"{API_BASE_URL}/reserve",
            json={
                "campaign_id": campaign_id,
                "material_ids": material_ids,
                "start_time": start_time.isoformat(),
                "end_time": end_time.isoformat(),
            },
            timeout=10,
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        st.error(f"Reservation failed: {_error_detail(e)}")
        return None


def post_release(campaign_id: str) -> Optional[Dict[str, Any]]:
    try:
        response = requests.post(
            f"{API_BASE_URL}/release",
            json={"campaign_id": campaign_id},
            timeout=10,
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        st.error(f"Release failed: {_error_detail(e)}")
        return None


def post_reclaim() -> Optional[Dict[str, Any]]:
    try:
        response = requests.post(f"{API_BASE_URL}/reclaim", timeout=30)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        st.error(f"Reclamation failed: {_error_detail(e)}")
        return None


# ==========================================
# UI Page Functions
# ==========================================
def render_overview_page() -> None:
    st.header("📊 Fleet Availability")

    summary = fetch_summary()
    if summary:
        col1, col2, col3, col4 = st.columns(4)
        col1.metric("Materials", summary.get("total_materials", 0))
        col2.metric("Occupied Slots", summary.get("occupied_slots", 0))
        col3.metric("Available Slots", summary.get("available_slots", 0))
        col4.metric("Utilization", f"{summary.get('utilization_rate', 0.0):.1f}%")

        by_status = summary.get("materials_by_status", {})
        st.bar_chart(pd.DataFrame({"materials": by_status}))

    materials = fetch_materials()
    views = fetch_availability([item["material_id"] for item in materials])
    if views:
        st.write("### Per-material availability")
        df = pd.DataFrame(views)
        st.dataframe(
            df[
                [
                    "material_id",
                    "status",
                    "occupied_slots",
                    "available_slots",
                    "total_slots",
                    "next_available_date",
                    "all_slots_free_date",
                ]
            ],
            use_container_width=True,
        )
    else:
        st.info("No materials registered yet.")


def render_reservation_page() -> None:
    st.header("📝 Reserve / Release")

    materials = fetch_materials()
    material_ids = [item["material_id"] for item in materials]

    campaign_id = st.text_input("Campaign ID", "CAMPAIGN-001")
    selected = st.multiselect("Materials", material_ids)
    col1, col2 = st.columns(2)
    with col1:
        start_date = st.date_input("Start date", datetime.date.today())
    with col2:
        end_date = st.date_input("End date", datetime.date.today() + datetime.timedelta(days=7))

    start_time = datetime.datetime.combine(start_date, datetime.time.min, datetime.timezone.utc)
    end_time = datetime.datetime.combine(end_date, datetime.time.min, datetime.timezone.utc)

    action_col1, action_col2 = st.columns(2)
    with action_col1:
        if st.button("Reserve", type="primary", disabled=not selected):
            result = post_reserve(campaign_id, selected, start_time, end_time)
            if result:
                st.success(f"Reserved {len(result.get('reservations', []))} slot(s)")
                st.dataframe(pd.DataFrame(result["reservations"]), use_container_width=True)
    with action_col2:
        if st.button("Release everywhere"):
            result = post_release(campaign_id)
            if result:
                st.success(f"Released on {len(result.get('material_ids', []))} material(s)")


def render_reclamation_page() -> None:
    st.header("♻️ Reclamation")
    st.markdown("Release slots held by unpaid or expired campaigns now, without waiting for the scheduler.")

    if st.button("Run reclamation", type="primary"):
        with st.spinner("Sweeping unpaid and expired campaigns..."):
            result = post_reclaim()
        if result:
            rows = [
                {"sweep": name, **{k: v for k, v in result[name].items() if k != "campaign_ids"}}
                for name in ("backlog", "unpaid", "expired")
            ]
            st.dataframe(pd.DataFrame(rows), use_container_width=True)
            st.caption(f"Ran at {result.get('ran_at')}")


# ==========================================
# Main App Router
# ==========================================
def main() -> None:
    st.sidebar.title("FleetSlot")
    st.sidebar.markdown("---")

    page = st.sidebar.radio(
        "Navigation Module",
        ["Availability", "Reservations", "Reclamation"],
    )

    st.sidebar.markdown("---")
    st.sidebar.caption(f"API: {API_BASE_URL}")

    if page == "Availability":
        render_overview_page()
    elif page == "Reservations":
        render_reservation_page()
    elif page == "Reclamation":
        render_reclamation_page()


if __name__ == "__main__":
    main()
