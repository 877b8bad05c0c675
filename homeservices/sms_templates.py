"""
SMS Templates
Short, action-oriented messages for partners and customers
"""

from datetime import datetime
from typing import Optional

from .domain.quotes.engine import format_cents


def format_time_for_sms(value: Optional[datetime]) -> str:
    """e.g. 'Tue Mar 4, 2:00 PM'"""
    if not value:
        return "TBD"
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{value:%a %b} {value.day}, {hour}:{value:%M} {suffix}"


def format_address_for_sms(address: Optional[dict]) -> str:
    """First line only"""
    if not address:
        return "TBD"
    return (address.get("line1") or "TBD").split(",")[0].strip()


def short_id(order_id) -> str:
    return f"#{str(order_id)[-4:]}"


# ============================================================================
# PARTNER - PICKUP
# ============================================================================


def pickup_notification(
    order_id: int, service_type: str, pickup_time: str, address: str
) -> str:
    return (
        f"🧺 New {service_type.lower()} order {short_id(order_id)}\n"
        f"📍 {address}\n"
        f"⏰ Pickup: {pickup_time}\n\n"
        f"Reply CONFIRM or RESCHEDULE"
    )


def pickup_confirmed(pickup_time: Optional[str] = None) -> str:
    return f"✅ Pickup confirmed for {pickup_time or 'the scheduled time'}. Text when picked up!"


def pickup_rescheduled() -> str:
    return "No problem! We'll follow up with a new pickup time."


def request_weight(order_id: int) -> str:
    return f"📊 Order {short_id(order_id)} - What's the actual weight? (Reply with number, e.g. \"18\")"


# ============================================================================
# PARTNER - QUOTE
# ============================================================================


def quote_ready(total_cents: int, measured_quantity: str) -> str:
    return (
        f"💰 Quote: {format_cents(total_cents)} for {measured_quantity} lbs\n\n"
        f"Reply OK to submit for approval"
    )


def quote_submitted() -> str:
    return "✅ Quote submitted! We'll approve & charge the customer, then text when ready for delivery."


def quote_invalid(message: str) -> str:
    return f"⚠️ Couldn't price that: {message}. Reply with the weight in lbs, e.g. \"18\""


# ============================================================================
# PARTNER - DELIVERY
# ============================================================================


def delivery_ready(order_id: int, delivery_time: str, address: str) -> str:
    return (
        f"🚗 Order {short_id(order_id)} ready for delivery!\n"
        f"⏰ {delivery_time}\n"
        f"📍 {address}\n\n"
        f"Reply CONFIRM or suggest a different time"
    )


def delivery_confirmed(delivery_time: Optional[str] = None) -> str:
    return f"✅ Delivery confirmed for {delivery_time or 'the scheduled time'}. Text DELIVERED when done!"


def delivery_rescheduled() -> str:
    return "👍 What time works better? (e.g. \"tomorrow 2pm\")"


def delivery_time_received(suggested_time: str) -> str:
    return f"Got it! We'll check if {suggested_time} works and get back to you."


def order_complete(order_id: int) -> str:
    return f"🎉 Order {short_id(order_id)} marked complete. Great work!"


def cancel_received(order_id: int) -> str:
    return f"📝 Got it. Support will contact you about order {short_id(order_id)}."


# ============================================================================
# PARTNER - FALLBACKS
# ============================================================================


def unknown() -> str:
    return (
        "🤔 I didn't quite get that. Common replies:\n"
        "- CONFIRM\n"
        "- OK\n"
        "- A number (for weight)\n"
        "- HELP"
    )


def help_message() -> str:
    return (
        "📱 Partner SMS Assistant\n\n"
        "I'll text you about:\n"
        "- New pickups (reply CONFIRM)\n"
        "- Weight collection (reply with number)\n"
        "- Quote approval (reply OK)\n"
        "- Delivery scheduling"
    )


def error() -> str:
    return "⚠️ Something went wrong. Please contact support."


def not_found() -> str:
    return "❓ I don't have any active orders for you right now."


def reminder(order_id: int) -> str:
    return f"⏰ Still waiting on order {short_id(order_id)}. Reply HELP if you're stuck."


# ============================================================================
# CUSTOMER
# ============================================================================


def customer_order_received(order_id: int, service_type: str, slot_time: str) -> str:
    return (
        f"Thanks for booking! Your {service_type.lower()} order {short_id(order_id)} "
        f"is confirmed for {slot_time}."
    )


def customer_quote_submitted(order_id: int, total_cents: int) -> str:
    return f"Your order {short_id(order_id)} was weighed. Quote: {format_cents(total_cents)}."


def customer_payment_captured(order_id: int, amount_cents: int) -> str:
    return f"💳 Payment of {format_cents(amount_cents)} received for order {short_id(order_id)}."


def customer_payment_failed(order_id: int) -> str:
    return f"⚠️ We couldn't charge your card for order {short_id(order_id)}. Please update your payment method."


def customer_order_rescheduled(order_id: int, slot_time: str) -> str:
    return f"📅 Order {short_id(order_id)} moved to {slot_time}."


def customer_order_cancelled(order_id: int, fee_cents: int) -> str:
    fee = f" A {format_cents(fee_cents)} cancellation fee applies." if fee_cents else ""
    return f"Order {short_id(order_id)} has been cancelled.{fee}"


def customer_order_completed(order_id: int) -> str:
    return f"🎉 Order {short_id(order_id)} is complete. Thanks for choosing us!"


TEMPLATES = {
    "pickup_notification": pickup_notification,
    "pickup_confirmed": pickup_confirmed,
    "pickup_rescheduled": pickup_rescheduled,
    "request_weight": request_weight,
    "quote_ready": quote_ready,
    "quote_submitted": quote_submitted,
    "quote_invalid": quote_invalid,
    "delivery_ready": delivery_ready,
    "delivery_confirmed": delivery_confirmed,
    "delivery_rescheduled": delivery_rescheduled,
    "delivery_time_received": delivery_time_received,
    "order_complete": order_complete,
    "cancel_received": cancel_received,
    "unknown": unknown,
    "help": help_message,
    "error": error,
    "not_found": not_found,
    "reminder": reminder,
    "customer_order_received": customer_order_received,
    "customer_quote_submitted": customer_quote_submitted,
    "customer_payment_captured": customer_payment_captured,
    "customer_payment_failed": customer_payment_failed,
    "customer_order_rescheduled": customer_order_rescheduled,
    "customer_order_cancelled": customer_order_cancelled,
    "customer_order_completed": customer_order_completed,
}


def render(name: str, **kwargs) -> str:
    return TEMPLATES[name](**kwargs)
