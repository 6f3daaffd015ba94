# cellseg/tests/test_batch.py
# Unit tests for core/batch.py: unit planning, naming, failure isolation

import os
import sys
import tempfile
import unittest

import cv2
import numpy as np

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

from cellseg.core.batch import (
    MeasUnit,
    PairedUnit,
    SaveOptions,
    SegUnit,
    build_unit_base_name,
    plan_frames,
    process_batch,
    units_from_paths,
)
from cellseg.core.errors import (
    FatalSetupError,
    InvalidInputError,
    RunCancelled,
    UnavailableCapabilityError,
)
from cellseg.core.preprocessing import SeriesMetadata


def _make_circle_image(h=100, w=100, cx=50, cy=50, r=20) -> np.ndarray:
    """Grayscale image with a bright disk on a black background."""
    img = np.zeros((h, w), dtype=np.uint8)
    cv2.circle(img, (cx, cy), r, 200, -1)
    return img


class FakeReader:
    """In-memory plane reader: path -> list of channel planes (one timepoint unless given)."""

    def __init__(self, planes, sizes_t=None, lie_shape=None):
        self.planes = planes
        self.sizes_t = sizes_t or {}
        self.lie_shape = lie_shape or {}
        self.closed = 0

    def series_metadata(self, path, series=0):
        chans = self.planes[path]
        h, w = self.lie_shape.get(path, chans[0].shape[:2])
        return SeriesMetadata(size_x=w, size_y=h, size_c=len(chans), size_t=self.sizes_t.get(path, 1))

    def open_plane(self, path, series=0, channel=0, time=0):
        plane = self.planes[path][channel]
        if isinstance(plane, Exception):
            raise plane
        return plane.copy()

    def close(self):
        self.closed += 1


class TestPlanFrames(unittest.TestCase):

    def setUp(self):
        self.meta = SeriesMetadata(size_x=10, size_y=10, size_c=3, size_t=4)

    def test_all_channels_first_timepoint(self):
        frames = plan_frames(MeasUnit("m.tif"), self.meta)
        self.assertEqual([(f.channel, f.time) for f in frames], [(0, 0), (1, 0), (2, 0)])

    def test_all_timepoints(self):
        frames = plan_frames(MeasUnit("m.tif", channels=(1,), all_timepoints=True), self.meta)
        self.assertEqual([(f.channel, f.time) for f in frames], [(1, 0), (1, 1), (1, 2), (1, 3)])

    def test_channel_out_of_range_raises(self):
        with self.assertRaises(InvalidInputError):
            plan_frames(MeasUnit("m.tif", channels=(3,)), self.meta)

    def test_empty_channel_selection_raises(self):
        with self.assertRaises(InvalidInputError):
            plan_frames(MeasUnit("m.tif", channels=()), self.meta)


class TestUnitNaming(unittest.TestCase):

    def test_same_source_uses_short_name(self):
        unit = PairedUnit(SegUnit("/data/cells.tif"))
        self.assertEqual(build_unit_base_name(unit, 0), "cells_S1")

    def test_paired_sources_use_pair_prefix(self):
        unit = PairedUnit(SegUnit("/data/dapi.tif"), MeasUnit("/data/gfp.tif"))
        self.assertEqual(build_unit_base_name(unit, 1), "pair2_dapi_S1__gfp_S1")

    def test_units_from_paths(self):
        units = units_from_paths(["a.tif", "b.tif"], ["c.tif", "d.tif"], all_timepoints=True)
        self.assertEqual(units[1].seg.source, "b.tif")
        self.assertEqual(units[1].meas.source, "d.tif")
        self.assertTrue(units[1].meas.all_timepoints)
        self.assertIsNone(units_from_paths(["a.tif"])[0].meas)

    def test_units_from_paths_count_mismatch(self):
        with self.assertRaises(InvalidInputError):
            units_from_paths(["a.tif", "b.tif"], ["c.tif"])


class TestProcessBatch(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.out = os.path.join(self.tmp.name, "out")
        self.params = {"min_area": 100}

    def test_failing_unit_is_isolated(self):
        img = _make_circle_image()
        planes = {f"img{i}.tif": [img] for i in (1, 2, 3, 4, 5)}
        # metadata claims 100x100 but the plane is smaller: fails after images are written
        planes["liar.tif"] = [np.zeros((10, 10), np.uint8)]
        reader = FakeReader(planes, lie_shape={"liar.tif": (100, 100)})
        units = [PairedUnit(SegUnit(f"img{i}.tif")) for i in (1, 2)]
        units.append(PairedUnit(SegUnit("img3.tif"), MeasUnit("liar.tif")))
        units += [PairedUnit(SegUnit(f"img{i}.tif")) for i in (4, 5)]
        progress = []

        summary = process_batch(units, self.params, self.out, reader=reader,
                                progress_callback=lambda done, total: progress.append((done, total)))

        self.assertEqual(summary.total, 5)
        self.assertEqual(summary.processed, 4)
        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.skipped, 0)
        self.assertIn(2, summary.errors)
        self.assertTrue(summary.errors[2].startswith("unit 3:"))
        self.assertEqual(progress, [(i, 5) for i in range(1, 6)])
        self.assertEqual(reader.closed, 0)

        names = set(os.listdir(self.out))
        self.assertFalse([n for n in names if n.startswith("pair3_")])
        for i in (1, 2, 4, 5):
            for suffix in ("_mask.tif", "_labels.tif", "_measurements.csv"):
                self.assertIn(f"img{i}_S1{suffix}", names)
        self.assertEqual(sorted(summary.outputs), [0, 1, 3, 4])

    def test_labels_written_as_uint16(self):
        reader = FakeReader({"a.tif": [_make_circle_image()]})
        process_batch([PairedUnit(SegUnit("a.tif"))], self.params, self.out, reader=reader)
        labels = cv2.imread(os.path.join(self.out, "a_S1_labels.tif"), cv2.IMREAD_UNCHANGED)
        self.assertEqual(labels.dtype, np.uint16)
        self.assertEqual(int(labels.max()), 1)

    def test_multi_frame_measurements_named_per_frame(self):
        img = _make_circle_image()
        reader = FakeReader({"seg.tif": [img], "meas.tif": [img, img]}, sizes_t={"meas.tif": 2})
        unit = PairedUnit(SegUnit("seg.tif"), MeasUnit("meas.tif", all_timepoints=True))
        save = SaveOptions(mask=False, labels=False, overlay=True)
        summary = process_batch([unit], self.params, self.out, reader=reader, save=save)
        self.assertEqual(summary.processed, 1)
        names = set(os.listdir(self.out))
        base = "pair1_seg_S1__meas_S1"
        self.assertIn(base + "_overlay.tif", names)
        for c in (1, 2):
            for t in (1, 2):
                self.assertIn(f"{base}_C{c}_T{t}_measurements.csv", names)
        self.assertNotIn(base + "_mask.tif", names)

    def test_empty_plane_is_skipped(self):
        reader = FakeReader({"empty.tif": [np.zeros((0, 0), np.uint8)],
                             "a.tif": [_make_circle_image()]})
        units = [PairedUnit(SegUnit("empty.tif")), PairedUnit(SegUnit("a.tif"))]
        summary = process_batch(units, self.params, self.out, reader=reader)
        self.assertEqual((summary.processed, summary.skipped, summary.failed), (1, 1, 0))

    def test_reader_error_counts_as_failure(self):
        reader = FakeReader({"bad.tif": [OSError("corrupt")], "a.tif": [_make_circle_image()]})
        units = [PairedUnit(SegUnit("bad.tif")), PairedUnit(SegUnit("a.tif"))]
        summary = process_batch(units, self.params, self.out, reader=reader)
        self.assertEqual((summary.processed, summary.failed), (1, 1))
        self.assertIn("corrupt", summary.errors[0])

    def test_cancel_aborts_batch(self):
        reader = FakeReader({"a.tif": [RunCancelled("stop")], "b.tif": [_make_circle_image()]})
        units = [PairedUnit(SegUnit("a.tif")), PairedUnit(SegUnit("b.tif"))]
        with self.assertRaises(RunCancelled):
            process_batch(units, self.params, self.out, reader=reader)
        self.assertEqual(os.listdir(self.out), [])

    def test_fatal_setup_errors(self):
        reader = FakeReader({"a.tif": [_make_circle_image()]})
        units = [PairedUnit(SegUnit("a.tif"))]
        with self.assertRaises(FatalSetupError):
            process_batch(units, self.params, None, reader=reader)
        with self.assertRaises(FatalSetupError):
            process_batch([], self.params, self.out, reader=reader)
        blocker = os.path.join(self.tmp.name, "file.txt")
        with open(blocker, "w") as f:
            f.write("x")
        with self.assertRaises(FatalSetupError):
            process_batch(units, self.params, blocker, reader=reader)

    def test_invalid_params_fail_before_any_unit(self):
        reader = FakeReader({"a.tif": [_make_circle_image()]})
        with self.assertRaises(InvalidInputError):
            process_batch([PairedUnit(SegUnit("a.tif"))], {"min_border_count": 9}, self.out, reader=reader)
        self.assertEqual(reader.closed, 0)

    def test_unknown_names_fail_before_any_unit(self):
        img = _make_circle_image()
        reader = FakeReader({f"img{i}.tif": [img] for i in range(3)})
        units = [PairedUnit(SegUnit(f"img{i}.tif")) for i in range(3)]
        for bad in ({"threshold_method": "Huangg"}, {"label_colormap": "nope"}):
            with self.assertRaises(InvalidInputError):
                process_batch(units, bad, self.out, reader=reader, save=SaveOptions(overlay=True))
        self.assertEqual(os.listdir(self.out), [])

    def test_caller_reader_is_left_open(self):
        img = _make_circle_image()
        reader = FakeReader({"a.tif": [img], "b.tif": [img]})
        units = [PairedUnit(SegUnit("a.tif")), PairedUnit(SegUnit("b.tif"))]
        summary = process_batch(units, self.params, self.out, reader=reader)
        self.assertEqual(summary.processed, 2)
        self.assertEqual(reader.closed, 0)

    def test_unreadable_container_fails_before_processing(self):
        ok = os.path.join(self.tmp.name, "ok.png")
        cv2.imwrite(ok, _make_circle_image())
        units = [PairedUnit(SegUnit(ok)), PairedUnit(SegUnit(os.path.join(self.tmp.name, "x.czi")))]
        with self.assertRaises(UnavailableCapabilityError):
            process_batch(units, self.params, self.out)
        self.assertEqual(os.listdir(self.out), [])

    def test_files_on_disk_with_default_reader(self):
        paths = []
        for i in range(2):
            p = os.path.join(self.tmp.name, f"cells{i}.tif")
            cv2.imwrite(p, _make_circle_image(cx=40 + 10 * i))
            paths.append(p)
        summary = process_batch(units_from_paths(paths), self.params, self.out)
        self.assertEqual(summary.processed, 2)
        self.assertTrue(os.path.isfile(os.path.join(self.out, "cells1_S1_labels.tif")))


if __name__ == "__main__":
    unittest.main()
