# Lead funnel analytics package
# Stage classification, per-source / per-employee aggregation and sale attribution.

from .stages import DEFAULT_FUNNEL_CONFIG, FunnelConfig, Stage, load_funnel_config  # noqa: F401
