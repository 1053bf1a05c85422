"""Decoding of quantized vision model outputs into detections, masks, keypoints and text."""

__version__ = "0.1.0"