from __future__ import annotations

import pandas as pd

from cfb_spread_model.utils.numeric import to_nullable_float

# More than this many days between games counts as coming off a bye.
BYE_WEEK_MIN_DAYS = 10


def _schedule_long(schedule: pd.DataFrame) -> pd.DataFrame:
    home = schedule[["game_id", "season", "game_date", "home_team"]].rename(columns={"home_team": "team"})
    away = schedule[["game_id", "season", "game_date", "away_team"]].rename(columns={"away_team": "team"})
    return pd.concat([home, away], ignore_index=True)


def add_schedule_features(team_df: pd.DataFrame, schedule: pd.DataFrame | None = None) -> pd.DataFrame:
    """
    Add rest and bye-week context grouped by [team, season].

    Adds:
    - rest_days (days since the team's previous game; null for its first)
    - bye_week (rest_days > BYE_WEEK_MIN_DAYS)
    - rest_delta (own rest_days minus opponent rest_days; null if either is null)

    ``schedule`` is the full season game list (one row per game). Rest is
    measured against it so a previous game outside the loaded week window
    still counts. When None, ``team_df`` itself is used as the schedule.
    """
    required = ["game_id", "season", "game_date", "team", "opponent"]
    missing = [c for c in required if c not in team_df.columns]
    if missing:
        raise KeyError(f"Schedule features require missing columns: {missing}")

    if schedule is None:
        sched = team_df[["game_id", "season", "game_date", "team"]].copy()
    else:
        sched = _schedule_long(schedule)
    if not pd.api.types.is_datetime64_any_dtype(sched["game_date"]):
        sched["game_date"] = pd.to_datetime(sched["game_date"])

    # Ensure correct chronological order within each team/season
    sched = sched.drop_duplicates(subset=["game_id", "team"]).sort_values(["team", "season", "game_date", "game_id"])
    group = sched.groupby(["team", "season"], group_keys=False)
    sched["rest_days"] = group["game_date"].diff().dt.days

    rest = sched[["game_id", "team", "rest_days"]]
    df = team_df.drop(columns=["rest_days", "bye_week", "rest_delta"], errors="ignore")
    df = df.merge(rest, on=["game_id", "team"], how="left")
    df = df.merge(
        rest.rename(columns={"team": "opponent", "rest_days": "opp_rest_days"}),
        on=["game_id", "opponent"],
        how="left",
    )
    df.index = team_df.index

    df["rest_days"] = to_nullable_float(df["rest_days"])
    opp_rest = to_nullable_float(df.pop("opp_rest_days"))
    df["bye_week"] = (df["rest_days"] > BYE_WEEK_MIN_DAYS).fillna(False).astype(bool)
    df["rest_delta"] = df["rest_days"] - opp_rest
    return df
