[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rkpost"
version = "0.1.0"
description = "Post-processing for quantized object detection, segmentation, pose and OCR model outputs"
requires-python = ">=3.10"
dependencies = ["numpy"]
keywords = [
    "yolo",
    "object-detection",
    "segmentation",
    "pose-estimation",
    "nms",
    "post-processing",
    "ocr",
    "quantization",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Image Recognition",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["rkpost"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
