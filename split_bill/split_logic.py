# split_bill/split_logic.py
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from .models import (
    ZERO,
    BillState,
    BillSummary,
    PersonSummary,
    PersonTarget,
    PoolBreakdown,
    PoolContribution,
    PoolTarget,
    SharedAllTarget,
)

CENT = Decimal("0.01")


def clean_number_string(num_str: str) -> str:
    """Clean number string by removing everything except digits, separators and a leading minus."""
    if not isinstance(num_str, str): return ""
    num_str = num_str.replace(" ", "")
    negative = num_str.startswith("-") or num_str.startswith("(")
    cleaned = re.sub(r'[^\d.,]', '', num_str)
    return ("-" + cleaned) if negative and cleaned else cleaned


def normalize_separators(num_str: str) -> str:
    """Turn '1.234,56', '1,234.56' or '12,5' into a plain dotted decimal string."""
    if ',' in num_str and '.' in num_str:
        # Whichever separator comes last is the decimal mark
        if num_str.rfind(',') > num_str.rfind('.'):
            return num_str.replace('.', '').replace(',', '.')
        return num_str.replace(',', '')
    if ',' in num_str:
        head, _, tail = num_str.rpartition(',')
        if len(tail) == 3 and head.lstrip('-'):
            return num_str.replace(',', '')  # 1,234 -> thousands separator
        return head.replace(',', '') + '.' + tail
    return num_str


def parse_quantity(value: Union[str, int, float, None]) -> int:
    """Parse a receipt quantity ('2', 'x3', '2.0') into a positive whole count. Anything else counts as 1."""
    if isinstance(value, bool) or value is None:
        return 1
    if isinstance(value, (int, float)):
        try:
            qty = int(value)
        except (ValueError, OverflowError):
            return 1
        return qty if qty >= 1 else 1
    if not isinstance(value, str): return 1
    num_str_cleaned = value.replace("x", "", 1).replace("X", "", 1).strip()
    match = re.match(r'^(\d+)(?:[.,]\d*)?$', num_str_cleaned)
    if match:
        try:
            qty = int(match.group(1))
        except ValueError:
            return 1
        return qty if qty >= 1 else 1
    return 1


def clean_and_convert_number(num_str: Union[str, int, float, Decimal, None]) -> Optional[Decimal]:
    """Clean and convert a price/charge value to Decimal, or None when it cannot be read as a number."""
    if isinstance(num_str, bool) or num_str is None:
        return None
    if isinstance(num_str, Decimal):
        return num_str if num_str.is_finite() else None
    if isinstance(num_str, int):
        return Decimal(num_str)
    if isinstance(num_str, float):
        # str() first so 0.1 stays 0.1 instead of its binary expansion
        value = Decimal(str(num_str))
        return value if value.is_finite() else None
    if not isinstance(num_str, str): return None

    num_str_stripped = num_str.strip()
    if not num_str_stripped: return None
    cleaned = normalize_separators(clean_number_string(num_str_stripped))
    if cleaned in ("", "-", ".", "-."):
        return None
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def coerce_amount(value: Any) -> Decimal:
    """Like clean_and_convert_number but unreadable input becomes 0. Negative values are kept for the caller to reject."""
    return clean_and_convert_number(value) or ZERO


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def safe_divide(numerator: Decimal, denominator: Union[Decimal, int]) -> Decimal:
    return numerator / denominator if denominator else ZERO


def calculate_split(state: BillState) -> BillSummary:
    """
    Compute every person's share of the bill from a state snapshot.

    Item values are attributed directly, through the shared-by-everyone pool
    or through custom pools. VAT and service charge are then apportioned in
    proportion to each person's item value over the proportional base; delivery
    is always a flat per-head split. The grand total comes straight from the
    bill charges and is not forced to match the sum of per-person totals.
    """
    people = state.people
    charges = state.charges
    num_people = len(people)
    person_ids = state.person_ids()

    items_total = sum((item.price for item in state.items), ZERO)
    unassigned_total = sum((item.price for item in state.items if item.assigned_to is None), ZERO)

    # --- Shared-by-everyone pool ---
    shared_all_total = sum(
        (item.price for item in state.items if isinstance(item.assigned_to, SharedAllTarget)), ZERO
    )
    shared_all_per_person = safe_divide(shared_all_total, num_people)

    # --- Custom pools ---
    pool_contributions: Dict[str, List[PoolContribution]] = {p.id: [] for p in people}
    active_pools = []
    for pool in state.custom_pools:
        pool_total = sum(
            (item.price for item in state.items
             if isinstance(item.assigned_to, PoolTarget) and item.assigned_to.id == pool.id),
            ZERO,
        )
        if pool_total <= 0:
            continue
        members = tuple(pid for pid in dict.fromkeys(pool.person_ids) if pid in person_ids)
        per_member = safe_divide(pool_total, len(members))
        active_pools.append(PoolBreakdown(
            pool_id=pool.id, pool_name=pool.name, person_ids=members,
            total=pool_total, per_member_share=per_member,
        ))
        for pid in members:
            pool_contributions[pid].append(PoolContribution(pool_id=pool.id, pool_name=pool.name, amount=per_member))

    # --- Proportional base ---
    if charges.subtotal > 0 and charges.subtotal >= items_total:
        base = charges.subtotal
    else:
        base = items_total

    delivery_per_person = safe_divide(charges.delivery, num_people)
    summaries = []
    for person in people:
        direct_items = tuple(
            item for item in state.items
            if isinstance(item.assigned_to, PersonTarget) and item.assigned_to.id == person.id
        )
        items_subtotal = sum((item.price for item in direct_items), ZERO)
        contributions = tuple(pool_contributions[person.id])
        contribution = items_subtotal + shared_all_per_person + sum((c.amount for c in contributions), ZERO)

        if base > 0:
            proportion = contribution / base
            vat_share = charges.vat * proportion
            service_share = charges.service_charge * proportion
        else:
            vat_share = safe_divide(charges.vat, num_people)
            service_share = safe_divide(charges.service_charge, num_people)

        summaries.append(PersonSummary(
            person_id=person.id,
            name=person.name,
            items=direct_items,
            items_subtotal=items_subtotal,
            shared_items_portion=shared_all_per_person,
            custom_pool_contributions=contributions,
            subtotal_contribution=contribution,
            vat_share=vat_share,
            service_charge_share=service_share,
            delivery_share=delivery_per_person,
            total_due=contribution + vat_share + service_share + delivery_per_person,
        ))

    grand_total = charges.subtotal + charges.vat + charges.service_charge + charges.delivery
    people_total = sum((s.total_due for s in summaries), ZERO)
    discrepancy = grand_total - people_total
    if summaries and round_money(discrepancy) != 0:
        logger.warning(
            f"Per-person totals ({round_money(people_total)}) do not add up to the bill total "
            f"({round_money(grand_total)}); difference {round_money(discrepancy)}"
        )

    return BillSummary(
        people=tuple(summaries),
        items_total=items_total,
        unassigned_total=unassigned_total,
        proportional_base=base,
        shared_all_total=shared_all_total,
        shared_all_per_person=shared_all_per_person,
        active_pools=tuple(active_pools),
        grand_total=grand_total,
        people_total=people_total,
        discrepancy=discrepancy,
    )


def summary_for_display(summary: BillSummary) -> Dict[str, Any]:
    """Round every monetary figure of a summary to cents for presentation."""
    def money(value: Decimal) -> float:
        return float(round_money(value))

    return {
        "people": [
            {
                "person_id": s.person_id,
                "name": s.name,
                "items": [{"item": i.name, "price": money(i.price)} for i in s.items],
                "items_subtotal": money(s.items_subtotal),
                "shared_items_portion": money(s.shared_items_portion),
                "custom_pool_contributions": [
                    {"pool_id": c.pool_id, "pool_name": c.pool_name, "amount": money(c.amount)}
                    for c in s.custom_pool_contributions
                ],
                "subtotal_contribution": money(s.subtotal_contribution),
                "vat_share": money(s.vat_share),
                "service_charge_share": money(s.service_charge_share),
                "delivery_share": money(s.delivery_share),
                "total_due": money(s.total_due),
            }
            for s in summary.people
        ],
        "items_total": money(summary.items_total),
        "proportional_base": money(summary.proportional_base),
        "shared_all_total": money(summary.shared_all_total),
        "shared_all_per_person": money(summary.shared_all_per_person),
        "active_pools": [
            {"pool_id": p.pool_id, "pool_name": p.pool_name, "total": money(p.total),
             "per_member_share": money(p.per_member_share)}
            for p in summary.active_pools
        ],
        "unassigned_total": money(summary.unassigned_total),
        "grand_total": money(summary.grand_total),
        "people_total": money(summary.people_total),
        "discrepancy": money(summary.discrepancy),
    }
