"""Critical path method over one project state.

Durations and lags are whole days; day 0 is the project start. Results are
immutable `Schedule` snapshots keyed by the state revision they were computed
from.
"""
