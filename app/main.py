"""
Streamlit Frontend for ChatLedger

A thin chat front-end over the ledger engine. Everything the user types
goes through ChatFlow; the other pages only read.

DESIGN PRINCIPLES:
1. One chat box, no forms
2. Every reply says what was (or was not) recorded
3. Undo is one click and never needs the classifier
4. No numbers on screen that did not come from the ledger
"""

import asyncio
from uuid import UUID

import streamlit as st

from chatledger.orchestrator import DispatchStatus, create_app_components


# Page configuration
st.set_page_config(
    page_title="ChatLedger",
    page_icon="💰",
    layout="wide",
    initial_sidebar_state="expanded",
)


def run_async(coro):
    """Helper to run async functions in Streamlit."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@st.cache_resource
def get_components():
    """Get or create application components (cached)."""
    return create_app_components()


def main():
    """Main application entry point."""
    try:
        components = get_components()
    except Exception as e:
        st.error(f"Failed to initialize: {e}")
        render_settings_page()
        return

    st.sidebar.title("💰 ChatLedger")
    st.sidebar.markdown("---")
    user_id = st.sidebar.text_input("User", value=st.session_state.get("user_id", "me"))
    st.session_state["user_id"] = user_id

    page = st.sidebar.radio(
        "Navigate to:",
        ["💬 Chat", "📊 Balances", "⚙️ Settings"],
        index=0,
    )

    st.sidebar.markdown("---")
    st.sidebar.markdown(
        """
        **Try:**
        - "spent 150 on food, cash"
        - "salary 30000 into BankA"
        - "transfer 1000 from BankA to BankB"
        - "set food budget 5000"
        - "how much did I spend this week?"
        """
    )

    if page == "💬 Chat":
        render_chat_page(components, user_id)
    elif page == "📊 Balances":
        render_balances_page(components, user_id)
    elif page == "⚙️ Settings":
        render_settings_page()


def render_chat_page(components, user_id: str):
    """Render the chat page."""
    st.title("💬 Chat")

    history = run_async(components.store.storage.get_chat_history(user_id))
    for turn in history:
        with st.chat_message(turn.role.value):
            st.markdown(turn.content)

    text = st.chat_input("What did you spend or earn?")
    if not text:
        return

    with st.chat_message("user"):
        st.markdown(text)

    with st.spinner("Updating your ledger..."):
        result = run_async(components.chat_flow.handle_message(user_id, text))

    with st.chat_message("assistant"):
        if result.status == DispatchStatus.FAILED:
            st.error(result.message)
        elif result.status in (DispatchStatus.REJECTED, DispatchStatus.CLARIFY):
            st.warning(result.message)
        else:
            st.markdown(result.message)
        for alert in result.alerts:
            st.warning(alert.message)

    # One-click undo of what was just written
    if result.transfer_id is not None:
        st.session_state["undo"] = ("transfer", result.transfer_id)
    elif result.entry_ids and result.action == "new":
        st.session_state["undo"] = ("entries", result.entry_ids)

    undo = st.session_state.get("undo")
    if undo and st.button("↩️ Undo last change"):
        kind, target = undo
        if kind == "transfer":
            outcome = run_async(components.dispatcher.delete_transfer(user_id, UUID(str(target))))
        else:
            outcome = run_async(components.dispatcher.delete_entries(user_id, list(target)))
        st.session_state.pop("undo", None)
        st.success(outcome.message)


def render_balances_page(components, user_id: str):
    """Render balances, budgets and recent entries."""
    st.title("📊 Balances")

    summary = run_async(components.store.get_balance_summary(user_id))
    net_worth = run_async(components.store.get_net_worth(user_id))

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Income", f"{summary.total_income:,.2f}")
    col2.metric("Expense", f"{summary.total_expense:,.2f}")
    col3.metric("Balance", f"{summary.balance:,.2f}", f"{summary.today_balance:,.2f} today")
    col4.metric("Net worth", f"{net_worth.net_worth:,.2f}")

    st.markdown("### Where the money is")
    balances = run_async(components.store.get_balance_by_payment_method(user_id))
    if balances:
        st.table([
            {
                "account": b.payment.label(),
                "in": f"{b.total_income:,.2f}",
                "out": f"{b.total_expense:,.2f}",
                "net": f"{b.net_balance:,.2f}",
            }
            for b in balances
        ])
    else:
        st.info("No entries yet. Tell the chat what you spent.")

    st.markdown("### Budgets this month")
    statuses = run_async(components.budgets.get_budget_status(user_id))
    for status in statuses:
        st.progress(
            min(status.percentage / 100, 1.0),
            text=f"{status.category}: {status.spent:,.2f} of {status.budget:,.2f}",
        )
    if not statuses:
        st.caption("No budgets set.")

    st.markdown("### Recent entries")
    hits = run_async(components.queries.get_recent_entries(user_id, days=7))
    if hits:
        st.table([hit.to_dict() for hit in hits])


def render_settings_page():
    """Render the settings page."""
    st.title("⚙️ Settings")

    st.markdown("### Connection Status")

    from chatledger.config import validate_all_settings

    status = validate_all_settings()

    services = [
        ("Ledger", "ledger"),
        ("Google Sheets (Storage)", "google_sheets"),
        ("Gemini (AI)", "gemini"),
        ("Application", "app"),
    ]

    for name, key in services:
        if status.get(key, False):
            st.success(f"✅ {name} - Configured")
        else:
            error = status.get(f"{key}_error", "Not configured")
            st.error(f"❌ {name} - {error}")

    st.markdown("---")
    st.markdown("### Configuration")
    st.markdown(
        "To configure the application, create a `.env` file with your API keys. "
        "See `.env.example` for the required variables."
    )


if __name__ == "__main__":
    main()
