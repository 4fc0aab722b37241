#!/usr/bin/env python3
"""
Tests for OziExplorer .map files and the OZF2 container reader
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest

from adapters.ozf_reader import OZFReader, map_id_for_path
from adapters.ozi_map_file import OziMapFileReader, OziMapFileWriter, find_map_file
from exceptions.tile_engine_exceptions import CalibrationError, MapFormatError
from map_fixtures import (OZF_EAST, OZF_NORTH, OZF_SIZE, OZF_SOUTH, OZF_WEST, UTM_IMAGE_SIZE, UTM_MPP,
                          UTM_ORIGIN_E, UTM_ORIGIN_N, UTM_ZONE, geo_map_text, map_header, utm_map_text,
                          utm_point, write_ozf2, write_ozf_map)
from services.calibration_service import build_utm_calibration


class TestOziMapFileReader:
    """Parsing .map calibration files"""

    def test_utm_grid_points(self):
        cal = OziMapFileReader.parse_text(utm_map_text(), 'utm.map')

        assert cal.title == 'UTM Test Map'
        assert cal.image_path == 'utm.png'
        assert cal.projection == 'Transverse Mercator'
        assert (cal.image_width, cal.image_height) == (UTM_IMAGE_SIZE, UTM_IMAGE_SIZE)
        assert len(cal.calibration_points) == 4

        utm = cal.utm_calibration
        assert utm is not None
        assert utm.zone == UTM_ZONE
        assert not utm.southern
        assert utm.pixel_to_utm.a == pytest.approx(10.0)
        assert utm.pixel_to_utm.e == pytest.approx(-10.0)
        assert utm.bilinear_points is not None

    def test_utm_points_get_geographic_coordinates(self):
        cal = OziMapFileReader.parse_text(utm_map_text(), 'utm.map')
        lat, lon = utm_point(0, 0)

        first = cal.calibration_points[0]
        assert first.latitude == pytest.approx(lat, abs=1e-9)
        assert first.longitude == pytest.approx(lon, abs=1e-9)

    def test_utm_bounds_from_corners(self):
        cal = OziMapFileReader.parse_text(utm_map_text(), 'utm.map')
        nw_lat, _ = utm_point(0, 0)
        se_lat, _ = utm_point(UTM_IMAGE_SIZE, UTM_IMAGE_SIZE)

        assert cal.corner_points is not None
        assert cal.bounds.north == pytest.approx(max(nw_lat, utm_point(UTM_IMAGE_SIZE, 0)[0]), abs=1e-9)
        assert cal.bounds.south == pytest.approx(min(se_lat, utm_point(0, UTM_IMAGE_SIZE)[0]), abs=1e-9)

    def test_degree_points(self):
        cal = OziMapFileReader.parse_text(geo_map_text(), 'area.map', image_size=(OZF_SIZE, OZF_SIZE))

        assert cal.utm_calibration is None
        assert [round(p.latitude, 6) for p in cal.calibration_points] == [OZF_NORTH, OZF_NORTH, OZF_SOUTH, OZF_SOUTH]
        assert cal.bounds.north == pytest.approx(OZF_NORTH)
        assert cal.bounds.south == pytest.approx(OZF_SOUTH)
        assert cal.bounds.west == pytest.approx(OZF_WEST)
        assert cal.bounds.east == pytest.approx(OZF_EAST)

    def test_image_size_override(self):
        cal = OziMapFileReader.parse_text(utm_map_text(), 'utm.map', image_size=(1024, 2048))
        assert (cal.image_width, cal.image_height) == (1024, 2048)

    def test_moving_map_corners(self):
        text = '\r\n'.join([
            'OziExplorer Map Data File Version 2.2', 'Corners only', 'x.png', '1 ,Map Code,', 'WGS 84,,',
            'MMPXY,1,0,0', 'MMPXY,2,100,0', 'MMPXY,3,100,50', 'MMPXY,4,0,50',
            'MMPLL,1, 10.000000, 50.000000', 'MMPLL,2, 10.200000, 50.000000',
            'MMPLL,3, 10.200000, 49.900000', 'MMPLL,4, 10.000000, 49.900000',
            'IWH,Map Image Width/Height,100,50',
        ])
        cal = OziMapFileReader.parse_text(text, 'corners.map')

        assert cal.bounds.north == pytest.approx(50.0)
        assert cal.bounds.south == pytest.approx(49.9)
        assert cal.bounds.east == pytest.approx(10.2)
        assert len(cal.calibration_points) == 4
        assert cal.calibration_points[2].pixel_x == 100

    def test_short_point_line_is_ignored(self):
        assert OziMapFileReader.parse_point_line('Point01,xy,10,20,in,deg') is None

    def test_empty_point_slot_is_ignored(self):
        assert OziMapFileReader.parse_point_line('Point05,xy,,,in,deg,,,,,N,,,,,E,grid,,,,,N') is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(MapFormatError):
            OziMapFileReader.parse(str(tmp_path / 'missing.map'))

    def test_collinear_utm_grid_points_skip_utm(self):
        lines = map_header('Diagonal', 'diag.png')
        for i, p in enumerate((0, 256, 512), start=1):
            easting = UTM_ORIGIN_E + p * UTM_MPP
            northing = UTM_ORIGIN_N - p * UTM_MPP
            lines.append(f"Point{i:02d},xy,{p},{p},in,deg,,,,N,,,,E,grid,{UTM_ZONE},{easting:.0f},{northing:.0f},N")
        lines.append(f"IWH,Map Image Width/Height,{UTM_IMAGE_SIZE},{UTM_IMAGE_SIZE}")

        cal = OziMapFileReader.parse_text('\r\n'.join(lines), 'diag.map')

        assert cal.utm_calibration is None
        assert len(cal.calibration_points) == 3


class TestUTMCalibration:
    """Pixel to UTM fits from grid points"""

    def test_too_few_points(self):
        assert build_utm_calibration([(0, 0, UTM_ORIGIN_E, UTM_ORIGIN_N)], UTM_ZONE, 10, 10) is None

    def test_collinear_points_raise(self):
        grid = [(p, p, UTM_ORIGIN_E + p, UTM_ORIGIN_N - p) for p in (0, 10, 20)]
        with pytest.raises(CalibrationError):
            build_utm_calibration(grid, UTM_ZONE, 100, 100)

    def test_two_points_on_one_axis_raise(self):
        grid = [(0, 0, UTM_ORIGIN_E, UTM_ORIGIN_N), (100, 0, UTM_ORIGIN_E + 1000, UTM_ORIGIN_N)]
        with pytest.raises(CalibrationError):
            build_utm_calibration(grid, UTM_ZONE, 100, 100)


class TestOziMapFileWriter:
    """Writing calibration back out"""

    def test_written_file_parses_to_same_points(self, tmp_path):
        cal = OziMapFileReader.parse_text(geo_map_text(), 'area.map', image_size=(OZF_SIZE, OZF_SIZE))
        map_path = str(tmp_path / 'out' / 'calibration.map')

        OziMapFileWriter.write(map_path, cal, 'Area', 'map.png')
        again = OziMapFileReader.parse(map_path)

        assert again.image_path == 'map.png'
        assert (again.image_width, again.image_height) == (OZF_SIZE, OZF_SIZE)
        assert len(again.calibration_points) == 4
        for before, after in zip(cal.calibration_points, again.calibration_points):
            assert after.pixel_x == before.pixel_x
            assert after.latitude == pytest.approx(before.latitude, abs=1e-5)
            assert after.longitude == pytest.approx(before.longitude, abs=1e-5)

    def test_thirty_point_slots_and_crlf(self):
        cal = OziMapFileReader.parse_text(geo_map_text(), 'area.map', image_size=(OZF_SIZE, OZF_SIZE))
        text = OziMapFileWriter.render(cal, 'Area')

        assert '\r\n' in text
        assert sum(1 for line in text.split('\r\n') if line.startswith('Point')) == 30
        assert f"IWH,Map Image Width/Height,{OZF_SIZE},{OZF_SIZE}" in text


class TestOZFReader:
    """OZF2 header and tile table"""

    def test_header(self, tmp_path):
        path = write_ozf2(str(tmp_path / 'map.ozf2'), width=200, height=130)
        header = OZFReader(path).read_header()

        assert header.version == 2
        assert (header.width, header.height) == (200, 130)
        assert (header.tiles_x, header.tiles_y) == (4, 3)

    def test_tile_table_and_extract(self, tmp_path):
        path = write_ozf2(str(tmp_path / 'map.ozf2'), shade=90)
        reader = OZFReader(path)
        table = reader.read_tile_table()

        assert (table.tiles_x, table.tiles_y) == (2, 2)
        assert len(table.offsets) == 5

        data = reader.extract_tile(1, 0, table)
        assert len(data) == 64 * 64
        assert set(data) == {100}

    def test_out_of_range_tile(self, tmp_path):
        path = write_ozf2(str(tmp_path / 'map.ozf2'))
        reader = OZFReader(path)
        table = reader.read_tile_table()

        assert reader.extract_tile(2, 0, table) is None
        assert reader.extract_tile(-1, 0, table) is None

    def test_unknown_magic(self, tmp_path):
        path = tmp_path / 'bogus.ozf2'
        path.write_bytes(b'\x00' * 64)
        assert OZFReader(str(path)).read_header() is None

    def test_find_map_file(self, tmp_path):
        ozf_path, map_path = write_ozf_map(str(tmp_path))
        assert find_map_file(ozf_path) == map_path

    def test_map_id_is_stable_and_case_insensitive(self):
        assert map_id_for_path('/maps/Area.ozf2') == map_id_for_path('/MAPS/area.OZF2')
        assert len(map_id_for_path('/maps/a.ozf2')) == 16


if __name__ == "__main__":
    pytest.main([__file__])
