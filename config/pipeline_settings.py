"""
Pipeline Settings
=================

Defines the countable range, control group and statistical options used by a
pipeline run. Each preset is a named ``PipelineSettings``.

To add a new preset:
1. Add a new entry to the PIPELINE_PRESETS dictionary
2. Specify the countable window (raw colonies per plate)
3. Optionally change the confidence level or significance threshold

Example:
    'wide_window': PipelineSettings(
        name='Wide Window',
        description='Accept 3-150 colonies per plate',
        countable_min=3,
        countable_max=150,
    )
"""

from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from .cfu_schema import CONTROL_GROUP


@dataclass
class PipelineSettings:
    """Configuration for one pipeline run."""
    name: str
    description: str
    countable_min: float = 5  # Inclusive lower bound on raw colonies
    countable_max: float = 95  # Inclusive upper bound on raw colonies
    control_group: str = CONTROL_GROUP  # Always kept, whatever its count
    confidence_level: float = 0.95  # Tukey HSD interval
    alpha: float = 0.05  # Threshold for significance stars/brackets
    min_observations_per_group: int = 2
    plot_type: str = "box"
    color_palette: str = "Set2"

    def __post_init__(self):
        if self.countable_min > self.countable_max:
            raise ValueError(
                f"countable_min ({self.countable_min}) exceeds countable_max ({self.countable_max})"
            )
        if not 0 < self.confidence_level < 1:
            raise ValueError(f"confidence_level must be in (0, 1), got {self.confidence_level}")
        if self.min_observations_per_group < 2:
            raise ValueError("Tukey HSD needs at least two observations per group")

    def with_overrides(self, **overrides) -> "PipelineSettings":
        """Copy of these settings with some fields replaced."""
        return replace(self, **overrides)

    def analysis_key(self) -> tuple:
        """Fields that change the tidy table or the statistics; plot options excluded."""
        return (self.countable_min, self.countable_max, self.control_group,
                self.confidence_level, self.alpha, self.min_observations_per_group)


# =============================================================================
# PRESET DEFINITIONS
# =============================================================================

PIPELINE_PRESETS: Dict[str, PipelineSettings] = {

    'standard': PipelineSettings(
        name='Standard (5-95)',
        description='Spot/drop plating, 5-95 colonies per spot considered countable',
        countable_min=5,
        countable_max=95,
    ),

    'classic_30_300': PipelineSettings(
        name='Classic Spread Plate (30-300)',
        description='Full spread plates, 30-300 colonies per plate considered countable',
        countable_min=30,
        countable_max=300,
    ),

    'custom': PipelineSettings(
        name='Custom',
        description='User-defined countable window',
    ),
}


def get_settings(preset_name: str = 'standard') -> PipelineSettings:
    """Get a preset by name, falling back to the custom preset."""
    return PIPELINE_PRESETS.get(preset_name.lower(), PIPELINE_PRESETS['custom'])


def get_available_presets() -> List[str]:
    """Get list of available preset names."""
    return list(PIPELINE_PRESETS.keys())


def get_preset_display_names() -> Dict[str, str]:
    """Get mapping of preset keys to display names."""
    return {key: preset.name for key, preset in PIPELINE_PRESETS.items()}


def add_custom_preset(
    key: str,
    name: str,
    description: str,
    countable_min: float,
    countable_max: float,
    control_group: str = CONTROL_GROUP,
    confidence_level: float = 0.95,
    alpha: float = 0.05,
    min_observations_per_group: Optional[int] = None
) -> PipelineSettings:
    """
    Add a new preset at runtime.

    Args:
        key: Unique identifier for the preset
        name: Display name
        description: What the preset is for
        countable_min: Inclusive lower bound of the countable window
        countable_max: Inclusive upper bound of the countable window
        control_group: Group label kept regardless of count
        confidence_level: Confidence level of the Tukey intervals
        alpha: Significance threshold used in reports
        min_observations_per_group: Smallest group size entering the fit

    Returns:
        The created PipelineSettings object
    """
    preset = PipelineSettings(
        name=name,
        description=description,
        countable_min=countable_min,
        countable_max=countable_max,
        control_group=control_group,
        confidence_level=confidence_level,
        alpha=alpha,
        min_observations_per_group=min_observations_per_group or 2,
    )
    PIPELINE_PRESETS[key.lower()] = preset
    return preset


DEFAULT_SETTINGS = PIPELINE_PRESETS['standard']
