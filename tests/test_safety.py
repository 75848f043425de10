"""Safety guard: schedule frequency, flow size, webhook loop detection."""

import pytest

from autoflow_agent.agent.flow_ir import (
    Branch,
    FlowDescriptor,
    PieceCall,
    PieceEventTrigger,
    ScheduleTrigger,
    WebhookTrigger,
)
from autoflow_agent.agent.safety import MAX_ACTIONS, guard


def _call(piece="@activepieces/piece-gmail"):
    return PieceCall(piece_id=piece, operation_id="op")


def _flow(trigger, n=1, actions=None):
    return FlowDescriptor(
        display_name="f",
        trigger=trigger,
        actions=tuple(actions) if actions is not None else tuple(_call() for _ in range(n)),
    )


class TestSchedule:
    @pytest.mark.parametrize("cron", ["*/1 * * * *", "*/3 * * * *", "*/4 * * * *"])
    def test_short_intervals_block(self, cron):
        assert not guard(_flow(ScheduleTrigger(cron_expression=cron))).safe

    @pytest.mark.parametrize("cron", ["*/5 * * * *", "*/10 * * * *", "0 8 * * *", "30 */2 * * *"])
    def test_normal_intervals_pass_quietly(self, cron):
        result = guard(_flow(ScheduleTrigger(cron_expression=cron)))
        assert result.safe
        assert result.warnings == []

    def test_every_minute_warns(self):
        result = guard(_flow(ScheduleTrigger(cron_expression="* * * * *")))
        assert result.safe
        assert len(result.warnings) == 1

    def test_six_field_cron_reads_minutes_second(self):
        blocked = guard(_flow(ScheduleTrigger(cron_expression="0 */2 * * * *")))
        assert not blocked.safe

        every_second = guard(_flow(ScheduleTrigger(cron_expression="* 0 8 * * *")))
        assert every_second.safe
        assert any("more than once per minute" in w for w in every_second.warnings)


class TestSize:
    def test_max_actions_passes(self):
        assert guard(_flow(WebhookTrigger(), n=MAX_ACTIONS)).safe

    def test_one_over_max_blocks(self):
        result = guard(_flow(WebhookTrigger(), n=MAX_ACTIONS + 1))
        assert not result.safe
        assert str(MAX_ACTIONS + 1) in result.blocks[0]

    def test_oversized_branch_side_blocks(self):
        big_branch = Branch(conditions=({"x": 1},), on_true=tuple(_call() for _ in range(40)))
        result = guard(_flow(WebhookTrigger(), actions=[_call(), big_branch]))

        assert not result.safe
        assert result.blocks == ["actions[1].onSuccessActions has 40 steps; the maximum is 30"]

    def test_many_wide_branches_block(self):
        wide = Branch(conditions=({"x": 1},), on_true=tuple(_call() for _ in range(500)))
        result = guard(_flow(WebhookTrigger(), actions=[wide] * MAX_ACTIONS))

        assert not result.safe
        assert len(result.blocks) == MAX_ACTIONS

    def test_nested_false_side_is_checked(self):
        inner = Branch(conditions=({"x": 1},), on_false=tuple(_call() for _ in range(31)))
        outer = Branch(conditions=({"x": 1},), on_true=(inner,))
        result = guard(_flow(WebhookTrigger(), actions=[outer]))

        assert result.blocks == [
            "actions[0].onSuccessActions[0].onFailureActions has 31 steps; the maximum is 30"
        ]

    def test_branch_side_at_ceiling_passes(self):
        full = Branch(conditions=({"x": 1},), on_true=tuple(_call() for _ in range(MAX_ACTIONS)))
        assert guard(_flow(WebhookTrigger(), actions=[full])).safe

    def test_ceiling_is_configurable(self):
        flow = _flow(WebhookTrigger(), n=6)

        assert guard(flow).safe
        blocked = guard(flow, max_actions=5)
        assert blocked.blocks == ["Flow has 6 steps; the maximum is 5"]


class TestWebhookLoop:
    def test_webhook_calling_http_warns(self):
        result = guard(_flow(WebhookTrigger(), actions=[_call("@activepieces/piece-http")]))
        assert result.safe
        assert len(result.warnings) == 1

    def test_nested_http_call_is_found(self):
        nested = Branch(conditions=({"x": 1},), on_false=(_call("@activepieces/piece-webhook"),))
        result = guard(_flow(WebhookTrigger(), actions=[nested]))
        assert len(result.warnings) == 1

    def test_non_webhook_trigger_does_not_warn(self):
        trigger = PieceEventTrigger(piece_id="@activepieces/piece-slack", event_id="new-message")
        result = guard(_flow(trigger, actions=[_call("@activepieces/piece-http")]))
        assert result.warnings == []
