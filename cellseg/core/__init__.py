# cellseg/core/__init__.py
# Core algorithms package - pure callables with no GUI dependencies
# Safe for headless testing and batch runs

from .batch import (
    BatchSummary,
    FrameSpec,
    MeasUnit,
    PairedUnit,
    SaveOptions,
    SegUnit,
    build_unit_base_name,
    plan_frames,
    process_batch,
    units_from_paths,
)
from .components import (
    Component,
    ComponentStats,
    ComponentView,
    findForegroundComponents,
    forEachForegroundComponent,
)
from .edges import EdgeDetector, computeEdges
from .errors import (
    CellSegError,
    FatalSetupError,
    InvalidInputError,
    PerUnitProcessingError,
    RunCancelled,
    UnavailableCapabilityError,
)
from .measurement import CellProps, measure_regions, region_boundaries, save_props_csv
from .overlay import alphaBlendRgb, colorizeLabels, createLabelOverlay
from .params import DEFAULTS, THRESHOLD_METHODS, SegmentationParams, load_params
from .preprocessing import ImagePlaneReader, SeriesMetadata, loadImage
from .processing import (
    RegionRecord,
    SegmentationResult,
    buildLabelImage,
    fillEdgeOpenHolesHybrid,
    fillHoles,
    filterRegions,
    labelRegions,
    removeBorderComponents,
    runSegmentationPipeline,
    thresholdImage,
    watershedSeparate,
    watershedSplit,
)

__all__ = [
    # params
    "DEFAULTS",
    "THRESHOLD_METHODS",
    "SegmentationParams",
    "load_params",
    # errors
    "CellSegError",
    "InvalidInputError",
    "UnavailableCapabilityError",
    "PerUnitProcessingError",
    "FatalSetupError",
    "RunCancelled",
    # edges
    "EdgeDetector",
    "computeEdges",
    # components
    "Component",
    "ComponentStats",
    "ComponentView",
    "forEachForegroundComponent",
    "findForegroundComponents",
    # processing
    "thresholdImage",
    "fillHoles",
    "removeBorderComponents",
    "fillEdgeOpenHolesHybrid",
    "watershedSeparate",
    "watershedSplit",
    "RegionRecord",
    "filterRegions",
    "buildLabelImage",
    "labelRegions",
    "SegmentationResult",
    "runSegmentationPipeline",
    # overlay
    "colorizeLabels",
    "alphaBlendRgb",
    "createLabelOverlay",
    # measurement
    "CellProps",
    "measure_regions",
    "region_boundaries",
    "save_props_csv",
    # preprocessing
    "loadImage",
    "ImagePlaneReader",
    "SeriesMetadata",
    # batch
    "SegUnit",
    "MeasUnit",
    "PairedUnit",
    "FrameSpec",
    "SaveOptions",
    "BatchSummary",
    "plan_frames",
    "build_unit_base_name",
    "units_from_paths",
    "process_batch",
]
