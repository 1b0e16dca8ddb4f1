import asyncio
import logging
from datetime import date
from typing import Callable, Optional

from sqlalchemy.orm import Session

from models import AccountType, TransactionType
from periods import Period, iter_months, local_today, month_to_date, resolve_window
from services import AccountService, BudgetService, GoalService, TransactionService

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30.44


def _score_savings_rate(savings_rate: float) -> int:
    if savings_rate >= 20:
        return 25
    if savings_rate >= 15:
        return 20
    if savings_rate >= 10:
        return 15
    if savings_rate >= 5:
        return 10
    if savings_rate > 0:
        return 5
    return 0


def _score_debt_to_income(ratio: float) -> int:
    if ratio <= 10:
        return 25
    if ratio <= 20:
        return 20
    if ratio <= 30:
        return 15
    if ratio <= 40:
        return 10
    if ratio <= 50:
        return 5
    return 0


def _score_emergency_fund(months_covered: float) -> int:
    if months_covered >= 6:
        return 25
    if months_covered >= 3:
        return 20
    if months_covered >= 1:
        return 15
    if months_covered >= 0.5:
        return 10
    if months_covered > 0:
        return 5
    return 0


def _score_budget_utilization(utilization: float) -> int:
    # Spending close to 85% of the budget is ideal.
    distance = abs(utilization - 85)
    if distance <= 5:
        return 15
    if distance <= 10:
        return 12
    if distance <= 20:
        return 8
    if distance <= 30:
        return 5
    return 0


def _score_goal_progress(progress: float) -> int:
    if progress >= 80:
        return 10
    if progress >= 60:
        return 8
    if progress >= 40:
        return 6
    if progress >= 20:
        return 4
    if progress > 0:
        return 2
    return 0


def financial_health_score(
    savings_rate: float,
    debt_to_income_ratio: float,
    emergency_fund_ratio: float,
    budget_utilization: float,
    goal_progress: float,
) -> int:
    """Score overall financial health on a 0-100 scale.

    Savings rate, debt-to-income and emergency fund contribute up to 25 points
    each, budget utilization up to 15 and goal progress up to 10.
    """
    score = (
        _score_savings_rate(savings_rate)
        + _score_debt_to_income(debt_to_income_ratio)
        + _score_emergency_fund(emergency_fund_ratio)
        + _score_budget_utilization(budget_utilization)
        + _score_goal_progress(goal_progress)
    )
    return max(0, min(100, score))


def _window_days(window: Period) -> int:
    return max((window.end - window.start).days, 1)


class AnalyticsService:
    def __init__(
        self, session: Session, user_id: int, today: Optional[date] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.today = today or local_today()
        self.accounts = AccountService(session, user_id)
        self.transactions = TransactionService(session, user_id)
        self.budgets = BudgetService(session, user_id)
        self.goals = GoalService(session, user_id)

    def health_metrics(self) -> dict[str, object]:
        period = month_to_date(self.today)
        net_worth = self.accounts.net_worth()
        by_type = self.accounts.summary()["by_type"]
        budget_summary = self.budgets.summary()
        goal_summary = self.goals.summary()
        month = self.transactions.summary(period.start, period.end)

        income = int(month["total_income_cents"])
        expenses = int(month["total_expenses_cents"])
        savings = income - expenses
        savings_rate = savings / income * 100 if income > 0 else 0.0

        debt = abs(
            by_type[AccountType.credit_card.value]["balance_cents"]
            + by_type[AccountType.loan.value]["balance_cents"]
        )
        debt_to_income = debt / income * 100 if income > 0 else 0.0

        emergency_fund = by_type[AccountType.savings.value]["balance_cents"]
        emergency_fund_ratio = emergency_fund / expenses if expenses > 0 else 0.0

        total_budget = budget_summary["total_budget_amount_cents"]
        budget_utilization = (
            budget_summary["total_spent_cents"] / total_budget * 100
            if total_budget > 0
            else 0.0
        )
        goal_progress = float(goal_summary["average_progress"])

        score = financial_health_score(
            savings_rate,
            debt_to_income,
            emergency_fund_ratio,
            budget_utilization,
            goal_progress,
        )
        return {
            "period_start": period.start,
            "period_end": period.end,
            "net_worth_cents": net_worth,
            "monthly_income_cents": income,
            "monthly_expenses_cents": expenses,
            "monthly_savings_cents": savings,
            "savings_rate": round(savings_rate, 2),
            "debt_to_income_ratio": round(debt_to_income, 2),
            "emergency_fund_ratio": round(emergency_fund_ratio, 2),
            "budget_utilization": round(budget_utilization, 2),
            "goal_progress": round(goal_progress, 2),
            "financial_health_score": score,
        }

    def _monthly_trend(
        self, window: Period, txn_type: TransactionType
    ) -> list[dict[str, object]]:
        key = (
            "total_expenses_cents"
            if txn_type == TransactionType.expense
            else "total_income_cents"
        )
        trend = []
        for month in iter_months(window.start, window.end):
            summary = self.transactions.summary(month.start, month.end, txn_type)
            trend.append({"month": month.slug, "amount_cents": summary[key]})
        return trend

    def _category_breakdown(
        self,
        by_category: dict[int, dict[str, object]],
        total: int,
        limit: Optional[int] = None,
    ) -> list[dict[str, object]]:
        rows = sorted(
            by_category.items(), key=lambda item: item[1]["amount_cents"], reverse=True
        )
        if limit is not None:
            rows = rows[:limit]
        return [
            {
                "category_id": category_id,
                "name": data["name"],
                "amount_cents": data["amount_cents"],
                "count": data["count"],
                "percentage": round(data["amount_cents"] / total * 100, 2)
                if total > 0
                else 0.0,
            }
            for category_id, data in rows
        ]

    def _flow_analysis(
        self,
        txn_type: TransactionType,
        start: Optional[date],
        end: Optional[date],
    ) -> tuple[dict[str, object], dict[int, dict[str, object]]]:
        window = resolve_window(start, end, today=self.today)
        summary = self.transactions.summary(window.start, window.end, txn_type)
        total = int(
            summary["total_expenses_cents"]
            if txn_type == TransactionType.expense
            else summary["total_income_cents"]
        )
        days = _window_days(window)
        analysis = {
            "start_date": window.start,
            "end_date": window.end,
            "total_cents": total,
            "transaction_count": summary["transaction_count"],
            "average_daily_cents": round(total / days, 2),
            "average_weekly_cents": round(total / (days / 7), 2),
            "average_monthly_cents": round(total / (days / DAYS_PER_MONTH), 2),
            "monthly_trend": self._monthly_trend(window, txn_type),
        }
        return analysis, summary["by_category"]

    def expense_analysis(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> dict[str, object]:
        analysis, by_category = self._flow_analysis(
            TransactionType.expense, start, end
        )
        analysis["top_categories"] = self._category_breakdown(
            by_category, int(analysis["total_cents"]), limit=10
        )
        return analysis

    def income_analysis(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> dict[str, object]:
        analysis, by_category = self._flow_analysis(
            TransactionType.income, start, end
        )
        analysis["sources"] = self._category_breakdown(
            by_category, int(analysis["total_cents"])
        )
        return analysis

    def budget_analysis(self) -> dict[str, object]:
        """Split active budgets into over- and under-budget lists.

        Each list is ordered by how far the budget deviates from its amount,
        largest first.
        """
        budgets = self.budgets.list_all()
        total_budgeted = 0
        total_spent = 0
        over_budget: list[dict[str, object]] = []
        under_budget: list[dict[str, object]] = []
        for budget in budgets:
            total_budgeted += budget.amount_cents
            total_spent += budget.spent_cents
            row = {
                "budget_id": budget.id,
                "name": budget.name,
                "category_id": budget.category_id,
                "category_name": budget.category.name if budget.category else "Unknown",
                "budgeted_cents": budget.amount_cents,
                "spent_cents": budget.spent_cents,
            }
            if budget.spent_cents > budget.amount_cents:
                row["over_amount_cents"] = budget.spent_cents - budget.amount_cents
                over_budget.append(row)
            else:
                row["remaining_amount_cents"] = budget.amount_cents - budget.spent_cents
                under_budget.append(row)

        over_budget.sort(key=lambda row: row["over_amount_cents"], reverse=True)
        under_budget.sort(key=lambda row: row["remaining_amount_cents"], reverse=True)
        return {
            "total_budgets": len(budgets),
            "total_budgeted_cents": total_budgeted,
            "total_spent_cents": total_spent,
            "utilization_rate": round(total_spent / total_budgeted * 100, 2)
            if total_budgeted > 0
            else 0.0,
            "over_budget": over_budget,
            "under_budget": under_budget,
        }


async def build_dashboard(
    session_factory: Callable[[], Session],
    user_id: int,
    today: Optional[date] = None,
) -> dict[str, object]:
    """Run the four analyses concurrently, each on its own session.

    Any failing analysis fails the whole dashboard.
    """
    today = today or local_today()

    def run(analysis: str) -> dict[str, object]:
        with session_factory() as session:
            service = AnalyticsService(session, user_id, today=today)
            return getattr(service, analysis)()

    health, expenses, income, budgets = await asyncio.gather(
        asyncio.to_thread(run, "health_metrics"),
        asyncio.to_thread(run, "expense_analysis"),
        asyncio.to_thread(run, "income_analysis"),
        asyncio.to_thread(run, "budget_analysis"),
    )
    logger.info(f"dashboard_built: user={user_id} today={today.isoformat()}")
    return {
        "health_metrics": health,
        "expense_analysis": expenses,
        "income_analysis": income,
        "budget_analysis": budgets,
    }
