import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional

from errors import BalanceInvariantError
from models import NO_ACCOUNT_ID, NO_CATEGORY_ID, AllocationType, RecalcStatus, TransactionKind
from schemas import (
    Account,
    AccountMonthBalance,
    BudgetDocument,
    Category,
    CategoryMonthBalance,
    MonthDocument,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreviousBalances:
    """End balances of the month before the one being computed."""

    accounts: dict[str, int] = field(default_factory=dict)
    categories: dict[str, int] = field(default_factory=dict)
    total_income: int = 0

    @classmethod
    def from_month_end(cls, month: MonthDocument) -> "PreviousBalances":
        return cls(
            accounts={k: v.end_balance for k, v in month.account_balances.items()},
            categories={k: v.end_balance for k, v in month.category_balances.items()},
            total_income=month.total_income,
        )

    @classmethod
    def from_month_start(cls, month: MonthDocument) -> "PreviousBalances":
        return cls(
            accounts={k: v.start_balance for k, v in month.account_balances.items()},
            categories={
                k: v.start_balance for k, v in month.category_balances.items()
            },
            total_income=month.previous_month_income,
        )


EMPTY = PreviousBalances()


@dataclass(frozen=True)
class MonthBalances:
    accounts: dict[str, AccountMonthBalance]
    categories: dict[str, CategoryMonthBalance]


def _tracked(entity_id: Optional[str], sentinel: str) -> bool:
    return bool(entity_id) and entity_id != sentinel


def _non_negative(amount: int, month: MonthDocument, txn_id: str) -> int:
    if amount < 0:
        logger.warning(
            f"malformed_transaction: month={month.label} id={txn_id} "
            f"amount_cents={amount} reason=negative"
        )
        return 0
    return amount


def compute_month_balances(
    month: MonthDocument,
    previous: PreviousBalances,
    *,
    accounts: Mapping[str, Account],
    categories: Mapping[str, Category],
    is_first_month: bool,
) -> MonthBalances:
    acc_income: dict[str, int] = defaultdict(int)
    acc_expenses: dict[str, int] = defaultdict(int)
    acc_transfers: dict[str, int] = defaultdict(int)
    acc_adjustments: dict[str, int] = defaultdict(int)
    cat_spent: dict[str, int] = defaultdict(int)
    cat_transfers: dict[str, int] = defaultdict(int)
    cat_adjustments: dict[str, int] = defaultdict(int)

    for txn in month.income:
        amount = _non_negative(txn.amount_cents, month, txn.id)
        if txn.account_id is None:
            logger.warning(
                f"malformed_transaction: month={month.label} id={txn.id} reason=no_account"
            )
            continue
        if _tracked(txn.account_id, NO_ACCOUNT_ID):
            acc_income[txn.account_id] += amount

    for txn in month.expenses:
        amount = _non_negative(txn.amount_cents, month, txn.id)
        if txn.account_id is None or txn.category_id is None:
            logger.warning(
                f"malformed_transaction: month={month.label} id={txn.id} "
                "reason=missing_reference"
            )
        if _tracked(txn.account_id, NO_ACCOUNT_ID):
            acc_expenses[txn.account_id] += amount
        if _tracked(txn.category_id, NO_CATEGORY_ID):
            cat_spent[txn.category_id] += amount

    for txn in month.transfers:
        amount = _non_negative(txn.amount_cents, month, txn.id)
        if _tracked(txn.from_account_id, NO_ACCOUNT_ID):
            acc_transfers[txn.from_account_id] -= amount
        if _tracked(txn.to_account_id, NO_ACCOUNT_ID):
            acc_transfers[txn.to_account_id] += amount
        if _tracked(txn.from_category_id, NO_CATEGORY_ID):
            cat_transfers[txn.from_category_id] -= amount
        if _tracked(txn.to_category_id, NO_CATEGORY_ID):
            cat_transfers[txn.to_category_id] += amount

    for txn in month.adjustments:
        if _tracked(txn.account_id, NO_ACCOUNT_ID):
            acc_adjustments[txn.account_id] += txn.amount_cents
        if _tracked(txn.category_id, NO_CATEGORY_ID):
            cat_adjustments[txn.category_id] += txn.amount_cents

    allocations = month.allocations if month.are_allocations_finalized else {}

    account_ids = (
        set(accounts)
        | set(previous.accounts)
        | set(month.account_balances)
        | set(acc_income)
        | set(acc_expenses)
        | set(acc_transfers)
        | set(acc_adjustments)
    )
    account_ids.discard(NO_ACCOUNT_ID)
    category_ids = (
        set(categories)
        | set(previous.categories)
        | set(month.category_balances)
        | set(allocations)
        | set(cat_spent)
        | set(cat_transfers)
        | set(cat_adjustments)
    )
    category_ids.discard(NO_CATEGORY_ID)

    account_rows: dict[str, AccountMonthBalance] = {}
    for account_id in sorted(account_ids):
        if account_id in previous.accounts:
            start = previous.accounts[account_id]
        elif is_first_month and account_id in accounts:
            start = accounts[account_id].opening_balance_cents
        else:
            start = 0
        net = (
            acc_income[account_id]
            - acc_expenses[account_id]
            + acc_transfers[account_id]
            + acc_adjustments[account_id]
        )
        account_rows[account_id] = AccountMonthBalance(
            account_id=account_id,
            start_balance=start,
            income=acc_income[account_id],
            expenses=acc_expenses[account_id],
            transfers=acc_transfers[account_id],
            adjustments=acc_adjustments[account_id],
            net_change=net,
            end_balance=start + net,
        )

    category_rows: dict[str, CategoryMonthBalance] = {}
    for category_id in sorted(category_ids):
        start = previous.categories.get(category_id, 0)
        allocated = int(allocations.get(category_id, 0))
        category_rows[category_id] = CategoryMonthBalance(
            category_id=category_id,
            start_balance=start,
            allocated=allocated,
            spent=cat_spent[category_id],
            transfers=cat_transfers[category_id],
            adjustments=cat_adjustments[category_id],
            end_balance=start
            + allocated
            - cat_spent[category_id]
            + cat_transfers[category_id]
            + cat_adjustments[category_id],
        )

    result = MonthBalances(accounts=account_rows, categories=category_rows)
    verify_balances(result, label=month.label)
    return result


def verify_balances(balances: MonthBalances, *, label: str = "") -> None:
    for account_id, row in balances.accounts.items():
        expected = row.start_balance + row.income - row.expenses + row.transfers + row.adjustments
        if row.end_balance != expected or row.net_change != expected - row.start_balance:
            raise BalanceInvariantError(
                f"Account {account_id} in {label} ends at {row.end_balance}, expected {expected}"
            )
    for category_id, row in balances.categories.items():
        expected = row.start_balance + row.allocated - row.spent + row.transfers + row.adjustments
        if row.end_balance != expected:
            raise BalanceInvariantError(
                f"Category {category_id} in {label} ends at {row.end_balance}, expected {expected}"
            )


def verify_rollover(previous: MonthDocument, month: MonthDocument) -> None:
    """Check that every entity of ``month`` starts where it ended in ``previous``."""
    for account_id, row in month.account_balances.items():
        prior = previous.account_balances.get(account_id)
        if prior is not None and prior.end_balance != row.start_balance:
            raise BalanceInvariantError(
                f"Account {account_id} starts {month.label} at {row.start_balance}, "
                f"but {previous.label} ended at {prior.end_balance}"
            )
    for category_id, row in month.category_balances.items():
        prior = previous.category_balances.get(category_id)
        if prior is not None and prior.end_balance != row.start_balance:
            raise BalanceInvariantError(
                f"Category {category_id} starts {month.label} at {row.start_balance}, "
                f"but {previous.label} ended at {prior.end_balance}"
            )


def _apply(month: MonthDocument, balances: MonthBalances, **extra) -> MonthDocument:
    return month.model_copy(
        update={
            "account_balances": balances.accounts,
            "category_balances": balances.categories,
            **extra,
        }
    )


def recalculate_month(
    month: MonthDocument, previous: PreviousBalances, budget: BudgetDocument
) -> MonthDocument:
    balances = compute_month_balances(
        month,
        previous,
        accounts=budget.accounts,
        categories=budget.categories,
        is_first_month=budget.is_first_month(month.key),
    )
    return _apply(month, balances, previous_month_income=previous.total_income)


def retotal_month(month: MonthDocument, budget: BudgetDocument) -> MonthDocument:
    """Recompute a month's totals keeping its stored start balances."""
    balances = compute_month_balances(
        month,
        PreviousBalances.from_month_start(month),
        accounts=budget.accounts,
        categories=budget.categories,
        is_first_month=budget.is_first_month(month.key),
    )
    return _apply(month, balances)


def balances_changed(before: MonthDocument, after: MonthDocument) -> bool:
    return (
        before.account_balances != after.account_balances
        or before.category_balances != after.category_balances
        or before.previous_month_income != after.previous_month_income
    )


def percentage_allocation(previous_month_income: int, percentage: Decimal) -> int:
    value = Decimal(previous_month_income) * Decimal(percentage) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def default_allocations(
    month: MonthDocument, categories: Mapping[str, Category]
) -> dict[str, int]:
    amounts: dict[str, int] = {}
    for category_id, category in categories.items():
        if category.allocation_type == AllocationType.percentage:
            amounts[category_id] = percentage_allocation(
                month.previous_month_income, category.default_percentage
            )
        else:
            amounts[category_id] = category.default_amount_cents
    return amounts


def stale_channels(kind: TransactionKind, txn) -> RecalcStatus:
    if kind == TransactionKind.income:
        return RecalcStatus.stale_accounts
    if kind == TransactionKind.expense:
        return RecalcStatus.stale_both
    if kind == TransactionKind.transfer:
        accounts = _tracked(txn.from_account_id, NO_ACCOUNT_ID) or _tracked(
            txn.to_account_id, NO_ACCOUNT_ID
        )
        categories = _tracked(txn.from_category_id, NO_CATEGORY_ID) or _tracked(
            txn.to_category_id, NO_CATEGORY_ID
        )
        return RecalcStatus.from_flags(categories, accounts)
    return RecalcStatus.from_flags(
        _tracked(txn.category_id, NO_CATEGORY_ID),
        _tracked(txn.account_id, NO_ACCOUNT_ID),
    )


ALLOCATION_CHANNELS = RecalcStatus.stale_categories


def account_effects(kind: TransactionKind, txn) -> dict[str, int]:
    """Net change a single transaction applies to each account's running balance."""
    effects: dict[str, int] = defaultdict(int)
    if kind == TransactionKind.income:
        if _tracked(txn.account_id, NO_ACCOUNT_ID):
            effects[txn.account_id] += max(txn.amount_cents, 0)
    elif kind == TransactionKind.expense:
        if _tracked(txn.account_id, NO_ACCOUNT_ID):
            effects[txn.account_id] -= max(txn.amount_cents, 0)
    elif kind == TransactionKind.transfer:
        amount = max(txn.amount_cents, 0)
        if _tracked(txn.from_account_id, NO_ACCOUNT_ID):
            effects[txn.from_account_id] -= amount
        if _tracked(txn.to_account_id, NO_ACCOUNT_ID):
            effects[txn.to_account_id] += amount
    elif _tracked(txn.account_id, NO_ACCOUNT_ID):
        effects[txn.account_id] += txn.amount_cents
    return dict(effects)


def diff_effects(before: dict[str, int], after: dict[str, int]) -> dict[str, int]:
    delta = {}
    for account_id in set(before) | set(after):
        change = after.get(account_id, 0) - before.get(account_id, 0)
        if change:
            delta[account_id] = change
    return delta
