from __future__ import annotations

import uuid
from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.orm import Session

from erp.crm.errors import NotFoundError
from erp.crm.models import CRMPipelineStage
from erp.crm.repositories import DealRepository, PipelineRepository, StageRepository
from erp.crm.schemas import DealStatisticsRead, ForecastMonthRead, StageBreakdown, StageConversionRead


_CENT = Decimal("0.01")
_ZERO = Decimal("0")


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


class StatisticsService:
    """Counts and sums over the deals in scope.

    Reads are not locked; a snapshot taken concurrently with a move may be
    slightly stale.
    """

    def __init__(
        self,
        *,
        pipelines: PipelineRepository | None = None,
        stages: StageRepository | None = None,
        deals: DealRepository | None = None,
    ) -> None:
        self.pipelines = pipelines or PipelineRepository()
        self.stages = stages or StageRepository()
        self.deals = deals or DealRepository()

    def get_statistics(self, session: Session, pipeline_id: uuid.UUID | None = None) -> DealStatisticsRead:
        if pipeline_id is not None:
            if self.pipelines.get(session, pipeline_id) is None:
                raise NotFoundError("pipeline not found")
            pipelines = [self.pipelines.get(session, pipeline_id)]
        else:
            pipelines = self.pipelines.list_all(session)

        pipeline_order = {pipeline.id: index for index, pipeline in enumerate(pipelines)}
        stages = sorted(
            self.stages.list_for_pipelines(session, list(pipeline_order)),
            key=lambda stage: (pipeline_order[stage.pipeline_id], stage.position),
        )
        deals = self.deals.list_in_scope(session, pipeline_id)

        counts: dict[str, int] = defaultdict(int)
        total_value = _ZERO
        won_value = _ZERO
        stage_counts: dict[uuid.UUID, int] = defaultdict(int)
        stage_values: dict[uuid.UUID, Decimal] = defaultdict(lambda: _ZERO)
        for deal in deals:
            value = Decimal(deal.value or 0)
            counts[deal.status] += 1
            total_value += value
            if deal.status == "won":
                won_value += value
            stage_counts[deal.stage_id] += 1
            stage_values[deal.stage_id] += value

        total = len(deals)
        avg = total_value / total if total else _ZERO
        return DealStatisticsRead(
            total_deals=total,
            open_deals=counts["open"],
            won_deals=counts["won"],
            lost_deals=counts["lost"],
            total_value=_money(total_value),
            won_value=_money(won_value),
            avg_deal_size=_money(avg),
            deals_by_stage=[
                StageBreakdown(
                    stage_id=stage.id,
                    pipeline_id=stage.pipeline_id,
                    stage_name=stage.name,
                    stage_color=stage.color,
                    position=stage.position,
                    count=stage_counts.get(stage.id, 0),
                    value=_money(stage_values.get(stage.id, _ZERO)),
                )
                for stage in stages
            ],
        )


class ForecastService:
    def __init__(self, *, stages: StageRepository | None = None, deals: DealRepository | None = None) -> None:
        self.stages = stages or StageRepository()
        self.deals = deals or DealRepository()

    def get_forecast(self, session: Session, pipeline_id: uuid.UUID | None = None) -> list[ForecastMonthRead]:
        deals = self.deals.list_open_with_close_date(session, pipeline_id)
        stages = self.stages.get_many(session, list({deal.stage_id for deal in deals}))

        totals: dict[str, Decimal] = defaultdict(lambda: _ZERO)
        weighted: dict[str, Decimal] = defaultdict(lambda: _ZERO)
        deal_counts: dict[str, int] = defaultdict(int)
        for deal in deals:
            if deal.expected_close_date is None:
                continue
            month = deal.expected_close_date.strftime("%Y-%m")
            value = Decimal(deal.value or 0)
            stage = stages.get(deal.stage_id)
            probability = Decimal(stage.win_probability if stage is not None else 0)
            totals[month] += value
            weighted[month] += value * probability / Decimal(100)
            deal_counts[month] += 1

        return [
            ForecastMonthRead(
                month=month,
                weighted_value=_money(weighted[month]),
                total_value=_money(totals[month]),
                deal_count=deal_counts[month],
            )
            for month in sorted(totals)
        ]


class ConversionService:
    """Funnel rates from current placement only.

    A deal counts as having reached every stage at or before its current
    stage's position, so deals that regressed to an earlier stage are
    undercounted for the stages they left.
    """

    def __init__(
        self,
        *,
        pipelines: PipelineRepository | None = None,
        stages: StageRepository | None = None,
        deals: DealRepository | None = None,
    ) -> None:
        self.pipelines = pipelines or PipelineRepository()
        self.stages = stages or StageRepository()
        self.deals = deals or DealRepository()

    def get_conversion_rates(self, session: Session, pipeline_id: uuid.UUID) -> list[StageConversionRead]:
        if self.pipelines.get(session, pipeline_id) is None:
            raise NotFoundError("pipeline not found")

        all_stages = self.stages.list_for_pipeline(session, pipeline_id)
        active: list[CRMPipelineStage] = [stage for stage in all_stages if stage.is_active]
        if not active:
            return []

        stage_positions = {stage.id: stage.position for stage in all_stages}
        deal_positions = [
            stage_positions[deal.stage_id]
            for deal in self.deals.list_in_scope(session, pipeline_id)
            if deal.stage_id in stage_positions
        ]

        def reached(position: int) -> int:
            return sum(1 for deal_position in deal_positions if deal_position >= position)

        baseline = max(reached(active[0].position), 1)
        results: list[StageConversionRead] = []
        for stage in active:
            count = reached(stage.position)
            rate = (Decimal(100 * count) / Decimal(baseline)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            results.append(
                StageConversionRead(
                    stage_id=stage.id,
                    stage_name=stage.name,
                    stage_color=stage.color,
                    position=stage.position,
                    deal_count=count,
                    conversion_rate=int(rate),
                )
            )
        return results
