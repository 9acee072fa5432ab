"""
AI enrichment module.
Provides the vision provider used by the ai-jobs worker.
"""
from imagepipe.ai.vision_provider import (
    VisionProvider,
    AIAnalysisError,
    AIConfigurationError,
    estimate_cost,
)

__all__ = ["VisionProvider", "AIAnalysisError", "AIConfigurationError", "estimate_cost"]
