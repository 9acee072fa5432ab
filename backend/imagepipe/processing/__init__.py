"""
Image transform engine.
"""
from imagepipe.processing.image_processor import ImageProcessor, ImageTransformError, ProcessingResult

__all__ = ["ImageProcessor", "ImageTransformError", "ProcessingResult"]
