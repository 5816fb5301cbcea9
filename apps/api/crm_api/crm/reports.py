from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy import ColumnElement, case, func, select
from sqlalchemy.orm import Session

from crm_api.core.errors import ValidationError
from crm_api.crm.models import RFP, SOW, Opportunity
from crm_api.crm.proposals import RFP_SUBMITTED


LEAD_SOURCES = (
    "Advertisement",
    "Cold Call",
    "Employee Referral",
    "External Referral",
    "Online Store",
    "Partner",
    "Public Relations",
    "Sales Email",
    "Seminar / Trade Show",
    "Web Download",
    "Web Research",
    "Chat",
    "Portal",
)
OTHER_SOURCE = "Others"

OPEN_PIPELINE_STATUSES = ("Open", "In Progress")
OPEN_PROPOSAL_STATUSES = ("Proposal Work-in-Progress", "Proposal Review")
ON_HOLD_STATUS = "Price Negotiation"
APPROVED_STAGE = "Approved"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DashboardTotals(_CamelModel):
    total_opportunities: int
    total_value: float
    won_opportunities: int
    open_opportunities: int
    lost_opportunities: int


class ConversionFunnel(_CamelModel):
    total: int
    rfb: int
    proposal: int
    sow: int
    won: int
    lost: int


class SourceCount(_CamelModel):
    name: str
    value: int


class DashboardStats(_CamelModel):
    totals: DashboardTotals
    conversion_funnel: ConversionFunnel
    source_distribution: list[SourceCount]


class SalesMetrics(_CamelModel):
    total_proposals: int
    proposals_won: int
    total_deal_value: float
    average_deal_value: float
    open_proposals: int
    lost_proposals: int
    on_hold_proposals: int
    win_rate: float


class ProposalRow(_CamelModel):
    id: int
    title: str
    customer: str
    type: str | None
    status: str | None
    deal_value: float
    updated: datetime


class SalesPerformance(_CamelModel):
    metrics: SalesMetrics
    proposals: list[ProposalRow]


def _count_when(condition: ColumnElement[bool]) -> ColumnElement[Any]:
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def _money(value: Decimal | float | int | None) -> float:
    return float(Decimal(value or 0).quantize(Decimal("0.01")))


@dataclass(slots=True)
class ReportingService:
    def dashboard_stats(self, session: Session) -> DashboardStats:
        total, value, won, open_count, lost = session.execute(
            select(
                func.count(Opportunity.id),
                func.coalesce(func.sum(Opportunity.amount), 0),
                _count_when(Opportunity.approval_stage == APPROVED_STAGE),
                _count_when(
                    Opportunity.pipeline_status.in_(OPEN_PIPELINE_STATUSES) | Opportunity.pipeline_status.is_(None)
                ),
                _count_when(Opportunity.pipeline_status == "Lost"),
            )
        ).one()

        rfb = session.scalar(select(func.count(func.distinct(RFP.opportunity_id)))) or 0
        proposal = (
            session.scalar(
                select(func.count(func.distinct(RFP.opportunity_id))).where(RFP.rfp_status == RFP_SUBMITTED)
            )
            or 0
        )
        sow = session.scalar(select(func.count(func.distinct(SOW.opportunity_id)))) or 0

        by_source = dict(
            session.execute(select(Opportunity.lead_source, func.count(Opportunity.id)).group_by(Opportunity.lead_source)).all()
        )
        distribution = [SourceCount(name=name, value=int(by_source.pop(name, 0))) for name in LEAD_SOURCES]
        distribution.append(SourceCount(name=OTHER_SOURCE, value=int(sum(by_source.values()))))

        return DashboardStats(
            totals=DashboardTotals(
                total_opportunities=int(total),
                total_value=_money(value),
                won_opportunities=int(won),
                open_opportunities=int(open_count),
                lost_opportunities=int(lost),
            ),
            conversion_funnel=ConversionFunnel(
                total=int(total),
                rfb=int(rfb),
                proposal=int(proposal),
                sow=int(sow),
                won=int(won),
                lost=int(lost),
            ),
            source_distribution=distribution,
        )

    def sales_performance(self, session: Session, presales_poc: str | None) -> SalesPerformance:
        """Aggregate the opportunities owned by one presales contact."""
        if not presales_poc or not presales_poc.strip():
            raise ValidationError("presales_poc query parameter is required", code="presales_poc_required")

        scope = Opportunity.presales_poc == presales_poc.strip()
        total, won, deal_value, average, open_count, lost, on_hold = session.execute(
            select(
                func.count(Opportunity.id),
                _count_when(Opportunity.pipeline_status == "Won"),
                func.coalesce(func.sum(Opportunity.amount), 0),
                func.coalesce(func.avg(Opportunity.amount), 0),
                _count_when(Opportunity.pipeline_status.in_(OPEN_PROPOSAL_STATUSES)),
                _count_when(Opportunity.pipeline_status == "Lost"),
                _count_when(Opportunity.pipeline_status == ON_HOLD_STATUS),
            ).where(scope)
        ).one()

        rows = session.scalars(
            select(Opportunity).where(scope).order_by(Opportunity.created_at.desc(), Opportunity.id.desc())
        ).all()

        total = int(total)
        return SalesPerformance(
            metrics=SalesMetrics(
                total_proposals=total,
                proposals_won=int(won),
                total_deal_value=_money(deal_value),
                average_deal_value=_money(average),
                open_proposals=int(open_count),
                lost_proposals=int(lost),
                on_hold_proposals=int(on_hold),
                win_rate=round(int(won) / total * 100, 2) if total else 0.0,
            ),
            proposals=[
                ProposalRow(
                    id=row.id,
                    title=row.opportunity_name,
                    customer=row.client_name,
                    type=row.opportunity_type,
                    status=row.pipeline_status,
                    deal_value=_money(row.amount),
                    updated=row.updated_at,
                )
                for row in rows
            ],
        )


reporting_service = ReportingService()
