# cellseg/__init__.py
# cellseg package root
"""
cellseg - Edge-based cell segmentation for microscopy images

Subpackages:
    core - Pure algorithms (edges, hole filling, components, labels, overlay, batch)

Quick start:
    python -m cellseg segment image.tif --out results/
    python -m cellseg batch a.tif b.tif --out results/

    # Or use core algorithms directly:
    from cellseg.core import runSegmentationPipeline, SegmentationParams
"""

__version__ = "0.1.0"

# Re-export commonly used items from core for convenience
from .core import (
    DEFAULTS,
    BatchSummary,
    CellProps,
    CellSegError,
    EdgeDetector,
    FatalSetupError,
    InvalidInputError,
    PairedUnit,
    PerUnitProcessingError,
    RunCancelled,
    SegmentationParams,
    SegmentationResult,
    UnavailableCapabilityError,
    createLabelOverlay,
    fillEdgeOpenHolesHybrid,
    findForegroundComponents,
    forEachForegroundComponent,
    load_params,
    loadImage,
    measure_regions,
    process_batch,
    runSegmentationPipeline,
    save_props_csv,
    units_from_paths,
)

__all__ = [
    "__version__",
    # params / errors
    "DEFAULTS",
    "SegmentationParams",
    "load_params",
    "CellSegError",
    "InvalidInputError",
    "UnavailableCapabilityError",
    "PerUnitProcessingError",
    "FatalSetupError",
    "RunCancelled",
    # segmentation
    "EdgeDetector",
    "fillEdgeOpenHolesHybrid",
    "forEachForegroundComponent",
    "findForegroundComponents",
    "SegmentationResult",
    "runSegmentationPipeline",
    "createLabelOverlay",
    # measurement
    "CellProps",
    "measure_regions",
    "save_props_csv",
    # io / batch
    "loadImage",
    "PairedUnit",
    "BatchSummary",
    "units_from_paths",
    "process_batch",
]
