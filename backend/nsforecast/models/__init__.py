from .domain import DecayableEvent, EnsembleRecord, EventTimings, Forecast, Observation, WorkoutSnapshot
from .observation import ObservationRecord
