"""
Tests for the rules engine: blocking rules, bonus exclusivity and scoring.
"""
from datetime import datetime

import pytest

from services.activity_normalizer import NormalizedActivity
from services.rules_engine import (
    BonusResult,
    EventRuleSpec,
    RuleContext,
    check_time_range,
    score_activity,
    select_bonus,
)

# 2024-01-07 is a Sunday.
SUNDAY = datetime(2024, 1, 7, 6, 30)


def make_activity(distance_km=5.0, moving_min=30.0, start=SUNDAY, activity_id=1):
    return NormalizedActivity(
        id=activity_id,
        user_id="u1",
        sport_kind="Run",
        distance_meters=distance_km * 1000,
        moving_time_seconds=int(moving_min * 60),
        start_time_local=start,
    )


def rule(rule_type, **config):
    return EventRuleSpec(rule_type=rule_type, config=config, rule_id=f"r-{rule_type}")


class TestBlockingRules:
    def test_no_rules_scores_distance(self):
        result = score_activity(make_activity(5.0), [])
        assert result.base_points == 5.0
        assert result.final_points == 5.0
        assert result.blocked is False

    def test_min_distance_defaults_to_2km(self):
        result = score_activity(make_activity(1.5), [rule("min_distance")])
        assert result.blocked is True
        assert result.final_points == 0
        assert "below minimum 2.0km" in result.block_reason

    def test_min_distance_passes(self):
        result = score_activity(make_activity(3.0), [rule("min_distance", min_km=3)])
        assert result.blocked is False

    def test_pace_range(self):
        rules = [rule("pace_range", min_pace=4.0, max_pace=8.0)]
        assert score_activity(make_activity(5.0, moving_min=30), rules).blocked is False
        # 3 min/km is too fast
        assert score_activity(make_activity(5.0, moving_min=15), rules).blocked is True

    def test_pace_range_without_pace_fails(self):
        result = score_activity(make_activity(0.0, moving_min=30), [rule("pace_range", min_pace=4, max_pace=8)])
        assert result.blocked is True
        assert result.block_reason == "No pace data available"

    def test_first_failing_rule_stops_evaluation(self):
        rules = [rule("min_distance", min_km=10), rule("pace_range", min_pace=4, max_pace=8)]
        result = score_activity(make_activity(5.0), rules)
        assert [r.rule_type for r in result.rule_log] == ["min_distance"]

    def test_blocked_activity_gets_no_bonus(self):
        rules = [rule("min_distance", min_km=10), rule("multiplier_day", multiplier_day=0, multiplier=2)]
        result = score_activity(make_activity(5.0), rules)
        assert result.blocked is True
        assert result.final_points == 0
        assert result.applied_bonus is None
        assert result.rejected_bonuses == ()


class TestTimeRange:
    @pytest.mark.parametrize("hhmm, allowed", [
        ("05:00", True),
        ("07:00", True),
        ("07:01", False),
        ("04:59", False),
    ])
    def test_inclusive_window(self, hhmm, allowed):
        hour, minute = map(int, hhmm.split(":"))
        activity = make_activity(start=datetime(2024, 1, 7, hour, minute, 30))
        passed, _ = check_time_range(activity, {"start_time": "05:00", "end_time": "07:00"})
        assert passed is allowed

    @pytest.mark.parametrize("hour, minute, allowed", [(23, 30, True), (1, 59, True), (2, 0, True), (3, 0, False)])
    def test_window_wraps_past_midnight(self, hour, minute, allowed):
        activity = make_activity(start=datetime(2024, 1, 7, hour, minute))
        passed, _ = check_time_range(activity, {"start_time": "22:00", "end_time": "02:00"})
        assert passed is allowed

    def test_unconfigured_window_passes(self):
        assert check_time_range(make_activity(), {})[0] is True


class TestHistoryRules:
    def test_daily_increase_first_activity_passes(self):
        result = score_activity(make_activity(5.0), [rule("daily_increase_individual", increase_km=1)], RuleContext())
        assert result.blocked is False

    def test_daily_increase_individual(self):
        rules = [rule("daily_increase_individual", increase_km=1)]
        assert score_activity(make_activity(6.0), rules, RuleContext(previous_distance_km=5.0)).blocked is False
        result = score_activity(make_activity(5.5), rules, RuleContext(previous_distance_km=5.0))
        assert result.blocked is True
        assert "Only increased by 0.50km" in result.block_reason

    def test_daily_increase_team_requires_team(self):
        result = score_activity(make_activity(5.0), [rule("daily_increase_team", team_increase_km=2)], RuleContext())
        assert result.block_reason == "User not in a team"

    def test_daily_increase_team_adds_current_activity(self):
        rules = [rule("daily_increase_team", team_increase_km=2)]
        context = RuleContext(team_id="t1", team_today_km=8.0, team_previous_km=10.0)
        assert score_activity(make_activity(4.0), rules, context).blocked is False
        assert score_activity(make_activity(3.0), rules, context).blocked is True

    def test_min_participants_counts_current_user(self):
        rules = [rule("min_participants", min_participants=3)]
        assert score_activity(make_activity(), rules, RuleContext(participants_today=2)).blocked is False
        assert score_activity(make_activity(), rules, RuleContext(participants_today=1)).blocked is True


class TestBonuses:
    def test_holiday_beats_multiplier_day(self):
        rules = [
            rule("multiplier_day", multiplier_day=0, multiplier=2),
            rule("holiday_bonus", holiday_date="2024-01-07", multiplier=3, name="New Year Run"),
        ]
        result = score_activity(make_activity(5.0), rules)

        assert result.final_points == 15.0
        assert result.applied_bonus.bonus_type == "holiday_bonus"
        assert [b.bonus_type for b in result.rejected_bonuses] == ["multiplier_day"]
        assert result.multiplier == 3

    def test_lucky_distance_beats_multiplier_day(self):
        rules = [
            rule("multiplier_day", multiplier_day=0),
            rule("lucky_distance", lucky_distances=[{"distance": 8.8, "name": "Lucky 8", "multiplier": 2.5}]),
        ]
        result = score_activity(make_activity(8.85), rules)

        assert result.applied_bonus.bonus_type == "lucky_distance"
        assert result.final_points == pytest.approx(22.125)

    def test_lucky_distance_outside_tolerance(self):
        rules = [rule("lucky_distance", lucky_distances=[{"distance": 8.8}])]
        assert score_activity(make_activity(9.0), rules).applied_bonus is None

    def test_multiplier_day_uses_sunday_as_zero(self):
        rules = [rule("multiplier_day", multiplier_day=0)]
        assert score_activity(make_activity(5.0), rules).final_points == 10.0
        monday = make_activity(5.0, start=datetime(2024, 1, 8, 6, 30))
        assert score_activity(monday, rules).final_points == 5.0

    def test_holiday_time_window_and_min_km(self):
        config = {"holiday_date": "2024-01-07", "time_range": {"start": "05:00", "end": "06:00"}, "min_km": 3}
        assert score_activity(make_activity(5.0), [rule("holiday_bonus", **config)]).applied_bonus is None
        early = make_activity(5.0, start=datetime(2024, 1, 7, 5, 30))
        assert score_activity(early, [rule("holiday_bonus", **config)]).final_points == 15.0
        short = make_activity(2.0, start=datetime(2024, 1, 7, 5, 30))
        assert score_activity(short, [rule("holiday_bonus", **config)]).applied_bonus is None

    def test_tet_bonus_alias(self):
        result = score_activity(make_activity(5.0), [rule("tet_bonus", tet_date="2024-01-07")])
        assert result.applied_bonus.bonus_type == "holiday_bonus"

    def test_select_bonus_tie_break(self):
        first = BonusResult("lucky_distance", 2.0, "a", 2, "r1")
        second = BonusResult("lucky_distance", 2.5, "b", 2, "r2")
        third = BonusResult("lucky_distance", 2.0, "c", 2, "r3")

        applied, rejected = select_bonus([first, second, third])

        assert applied is second
        assert rejected == (first, third)


class TestRuleHandling:
    def test_unknown_rule_is_logged_and_passes(self):
        result = score_activity(make_activity(5.0), [rule("moon_phase")])
        assert result.blocked is False
        assert result.rule_log[0].passed is True

    def test_event_level_rules_do_not_affect_scoring(self):
        rules = [rule("min_active_days", min_percentage=80), rule("penalty", penalty_per_day=50000)]
        result = score_activity(make_activity(5.0), rules)
        assert result.final_points == 5.0
        assert result.rule_log == ()

    def test_scoring_is_deterministic(self):
        rules = [rule("min_distance"), rule("multiplier_day", multiplier_day=0)]
        activity = make_activity(5.0)
        assert score_activity(activity, rules, event_id="e1") == score_activity(activity, rules, event_id="e1")
