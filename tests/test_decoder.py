import numpy as np
import pytest

from bb_decoder import (BlackboxDecoder, LogHeader, align_nearest, decode, decode_file,
                        find_session_boundaries, parse_header, strip_flash_headers,
                        validate_header)
from logbuilder import (build_log, flash_dump, frame, frame_list, header, log_end, log_header,
                        neg14, svb, uvb)


class TestHeader:
    def test_parse_header_fields(self):
        data = build_log(10)
        header, body = parse_header(data, 0, len(data))
        assert data[body:body + 1] == b"I"
        assert header.craft_name == "bench"
        assert header.data_version == 2
        assert header.sample_rate == pytest.approx(10000.0)
        i_def = header.field_defs["I"]
        assert i_def["names"][:2] == ["loopIteration", "time"]
        assert i_def["encoding"] == [1, 1, 0, 0, 0]
        # P-frames borrow the I-frame names
        assert header.field_defs["P"]["names"] == i_def["names"]
        assert header.field_defs["S"] is None

    def test_gyro_scale_hex_float(self):
        header = LogHeader({"gyro_scale": "0x3f800000"})
        assert header.gyro_scale == pytest.approx(1.0)

    def test_p_interval_defaults(self):
        header = LogHeader({"looptime": "125", "P interval": "2/4"})
        assert header.p_interval == 2
        assert header.p_denom == 4
        assert header.sample_rate == pytest.approx(1e6 / (125 * 8))

    def test_header_warnings(self):
        slow = LogHeader({"looptime": "1000", "Firmware revision": "Betaflight 4.5.1",
                          "debug_mode": "0"})
        warnings = validate_header(slow)
        assert len(warnings) == 2
        assert warnings[0].startswith("logging rate is 1000 Hz")
        assert "GYRO_SCALED" in warnings[1]

    def test_debug_mode_not_checked_from_4_6(self):
        header = LogHeader({"looptime": "125", "Firmware revision": "Betaflight 2025.12.0 (4.6.0)",
                            "debug_mode": "0"})
        assert validate_header(header) == []
        assert validate_header(LogHeader({"looptime": "125", "debug_mode": "6"})) == []

    def test_slow_log_warning_reaches_decode(self):
        _, _, warnings = decode(build_log(10, looptime=1000))
        assert any(w.startswith("logging rate is 1000 Hz") for w in warnings)

    def test_session_boundaries(self):
        data = build_log(5) + build_log(5)
        bounds = find_session_boundaries(data)
        assert len(bounds) == 2
        assert bounds[0] == 0


class TestPrimitives:
    def _decoder_over(self, payload):
        hdr, _ = parse_header(build_log(1), 0, 10_000)
        dec = BlackboxDecoder(hdr)
        dec.buf, dec.pos, dec.end = payload, 0, len(payload)
        return dec

    def test_variable_byte_values(self):
        dec = self._decoder_over(uvb(300) + svb(-3) + svb(7))
        assert dec._read_unsigned_vb() == 300
        assert dec._read_signed_vb() == -3
        assert dec._read_signed_vb() == 7

    def test_overlong_variable_byte_is_corrupt(self):
        dec = self._decoder_over(b"\xff" * 6)
        with pytest.raises(ValueError):
            dec._read_unsigned_vb()

    def test_tag2_3s32_two_bit_fields(self):
        # selector 0, fields 01 11 10 -> 1, -1, -2
        dec = self._decoder_over(bytes([0b00011110]))
        assert dec._read_tag2_3s32() == [1, -1, -2]

    def test_tag2_3s32_byte_widths(self):
        # selector 3, widths 1/2/1 bytes, little-endian
        lead = 0xC0 | (0 << 0) | (1 << 2) | (0 << 4)
        dec = self._decoder_over(bytes([lead, 0xFE, 0x34, 0x12, 0x05]))
        assert dec._read_tag2_3s32() == [-2, 0x1234, 5]

    def test_tag8_4s16_nibbles_and_bytes(self):
        # fields: 4-bit, 8-bit, zero, 4-bit
        selector = 1 | (2 << 2) | (0 << 4) | (1 << 6)
        dec = self._decoder_over(bytes([selector, 0x3F, 0xE5, 0x00]))
        assert dec._read_tag8_4s16() == [3, -2, 0, 5]


class TestDecode:
    def test_empty_input(self):
        assert decode(b"") == ([], 0, [])

    def test_no_header(self):
        sessions, corrupted, warnings = decode(b"\x00\x01garbage without a header")
        assert sessions == []
        assert corrupted == 0
        assert "no blackbox header found" in warnings

    def test_single_session(self):
        sessions, corrupted, _ = decode(build_log(40))
        assert len(sessions) == 1
        assert corrupted == 0
        fd = sessions[0].flight_data
        assert fd.frame_count == 40
        assert fd.sample_rate == pytest.approx(10000.0)
        assert fd.gyro[0].values[:4].tolist() == [-3, -2, -1, 0]
        assert fd.gyro[2].values[:4].tolist() == [-1, 0, 1, -1]
        assert fd.duration == pytest.approx(39 * 100 / 1e6)

    def test_sessions_have_monotonic_time(self):
        data = build_log(30) + build_log(20, craft="second")
        sessions, corrupted, _ = decode(data)
        assert [s.index for s in sessions] == [0, 1]
        assert [s.flight_data.frame_count for s in sessions] == [30, 20]
        assert sessions[1].header.craft_name == "second"
        for s in sessions:
            for series in s.flight_data.gyro + s.flight_data.setpoint:
                assert np.all(np.diff(series.time) >= 0)

    def test_damaged_marker_costs_one_frame(self):
        frames = frame_list(40)
        frames[5] = b"\x00" + frames[5][1:]
        sessions, corrupted, _ = decode(build_log(frames=frames))
        assert corrupted == 1
        assert len(sessions) == 1
        assert sessions[0].corrupted_frame_count == 1
        assert sessions[0].flight_data.frame_count == 39

    def test_truncated_log_keeps_decoded_frames(self):
        data = header() + b"".join(frame_list(25))
        sessions, _, _ = decode(data[:-2])
        assert len(sessions) == 1
        assert sessions[0].flight_data.frame_count >= 24

    def test_iteration_jump_starts_new_session(self):
        frames = frame_list(20) + frame_list(10, first_iteration=10000, first_time=2000)
        sessions, corrupted, _ = decode(build_log(frames=frames))
        assert corrupted == 0
        assert [s.flight_data.frame_count for s in sessions] == [20, 10]

    def test_stray_end_marker_is_not_log_end(self):
        frames = frame_list(10)
        frames.insert(4, b"E\xffnot the end")
        sessions, corrupted, _ = decode(header() + b"".join(frames) + log_end())
        assert sessions[0].flight_data.frame_count == 10
        assert corrupted == 1

    def test_progress_reaches_the_end(self):
        events = []
        decode(build_log(40), progress=events.append)
        assert events
        assert events[-1]["percent"] == 100
        assert events[-1]["bytes_processed"] == events[-1]["total_bytes"]

    def test_flash_headers_are_stripped(self):
        data = build_log(40)
        dump = flash_dump(data)
        assert strip_flash_headers(dump) == data
        sessions, _, _ = decode(dump)
        assert sessions[0].flight_data.frame_count == 40

    def test_clean_log_is_not_stripped(self):
        data = build_log(5)
        assert strip_flash_headers(data) is data

    def test_decode_file(self, tmp_path):
        path = tmp_path / "LOG00001.BFL"
        path.write_bytes(build_log(12))
        sessions, corrupted, _ = decode_file(str(path))
        assert sessions[0].flight_data.frame_count == 12
        assert corrupted == 0


class TestAlignNearest:
    def test_picks_nearest_sample(self):
        out = align_nearest([0, 1, 2], [10, 20, 30], [0.4, 0.6, 1.5, 5, -1])
        assert out.tolist() == [10, 20, 20, 30, 10]

    def test_single_source_broadcasts(self):
        assert align_nearest([3], [7], [0, 1, 2]).tolist() == [7, 7, 7]

    def test_empty_source(self):
        assert np.all(np.isnan(align_nearest([], [], [0, 1])))


# ─── Predicted Frames ────────────────────────────────────────────────────────

MAIN_NAMES = ["loopIteration", "time", "gyroADC[0]", "gyroADC[1]", "gyroADC[2]",
              "motor[0]", "motor[1]", "vbatLatest"]


def main_fields(gyro_encoding=0):
    return {
        "I": {"name": MAIN_NAMES,
              "signed": [0, 0, 1, 1, 1, 0, 1, 0],
              "predictor": [0, 0, 0, 0, 0, 4, 5, 9],
              "encoding": [1, 1, 0, 0, 0, 1, 0, 3]},
        "P": {"predictor": [6, 2, 1, 1, 1, 3, 3, 1],
              "encoding": [9, 0] + [gyro_encoding] * 3 + [0, 0, 0]},
    }


def gyro_deltas(deltas, encoding):
    if encoding == 6:
        tag = sum(1 << i for i, d in enumerate(deltas) if d)
        return bytes([tag]) + b"".join(svb(d) for d in deltas if d)
    return b"".join(svb(d) for d in deltas)


def three_frame_body(encoding=0, time_steps=(100, 0)):
    # I: it 0, t 1000, gyro 10/20/30, motors 1200/1250, vbat 410
    # P: gyro deltas +1/+2/-1 then +1/-1/0, motors averaged, vbat -2 then 0
    return [
        frame("I", uvb(0), uvb(1000), svb(10), svb(20), svb(30),
              uvb(1200 - 1070), svb(50), neg14(410 - 420)),
        frame("P", svb(time_steps[0]), gyro_deltas([1, 2, -1], encoding),
              svb(10), svb(-10), svb(-2)),
        frame("P", svb(time_steps[1]), gyro_deltas([1, -1, 0], encoding),
              svb(15), svb(-15), svb(0)),
    ]


def main_log(frames, encoding=0, extra=("minthrottle:1070", "vbatref:420")):
    return log_header(main_fields(encoding), extra) + b"".join(frames) + log_end()


def raw_frames(data):
    """Decoded main frames of the first session, as {field: [values]}."""
    hdr, body = parse_header(data, 0, len(data))
    runs = BlackboxDecoder(hdr).decode_frames(data, body, len(data))
    frames = runs[0].frames
    return {name: [f[i] for f in frames] for i, name in enumerate(hdr.field_defs["I"]["names"])}


class TestPredictedFrames:
    @pytest.mark.parametrize("encoding", [0, 6], ids=["signed_vb", "tag8_8svb"])
    def test_p_frames_apply_previous_predictor(self, encoding):
        sessions, corrupted, _ = decode(main_log(three_frame_body(encoding), encoding))
        assert corrupted == 0
        fd = sessions[0].flight_data
        assert fd.frame_count == 3
        assert fd.gyro[0].values.tolist() == [10, 11, 12]
        assert fd.gyro[1].values.tolist() == [20, 22, 21]
        assert fd.gyro[2].values.tolist() == [30, 29, 29]

    def test_time_follows_straight_line(self):
        values = raw_frames(main_log(three_frame_body()))
        assert values["time"] == [1000, 1100, 1200]

    def test_loop_iteration_increments(self):
        values = raw_frames(main_log(three_frame_body()))
        assert values["loopIteration"] == [0, 1, 2]

    def test_motor_predictors(self):
        sessions, _, _ = decode(main_log(three_frame_body()))
        motor = sessions[0].flight_data.motor
        # I: minthrottle, then motor[0]; P: average of the two previous frames
        assert motor[0].values.tolist() == [1200, 1210, 1220]
        assert motor[1].values.tolist() == [1250, 1240, 1230]

    def test_vbat_is_negative_14_bit_against_vbatref(self):
        values = raw_frames(main_log(three_frame_body()))
        assert values["vbatLatest"] == [410, 408, 408]

    def test_average_of_two_truncates_toward_zero(self):
        hdr, _ = parse_header(main_log([]), 0, 10_000)
        dec = BlackboxDecoder(hdr)
        assert dec._pred_average_2(0, 0, [], [-3], [0]) == -1
        assert dec._pred_average_2(0, 0, [], [3], [0]) == 1

    def test_iteration_skips_frames_left_out_by_p_interval(self):
        extra = ("minthrottle:1070", "vbatref:420", "I interval:32", "P interval:1/2")
        values = raw_frames(main_log(three_frame_body(time_steps=(200, 0)), extra=extra))
        assert values["loopIteration"] == [0, 2, 4]
        assert values["time"] == [1000, 1200, 1400]

    def test_skipped_frame_count_follows_interval(self):
        extra = ("I interval:32", "P interval:1/4")
        hdr, _ = parse_header(main_log([], extra=extra), 0, 10_000)
        dec = BlackboxDecoder(hdr)
        assert dec._skipped_frames([0] * len(MAIN_NAMES)) == 3
        assert dec._skipped_frames([4] + [0] * (len(MAIN_NAMES) - 1)) == 3
        assert dec._skipped_frames([30] + [0] * (len(MAIN_NAMES) - 1)) == 1


class TestAuxiliaryFrames:
    def fields(self):
        fields = main_fields()
        fields["S"] = {"name": ["flightModeFlags", "stateFlags"],
                       "signed": [0, 0], "predictor": [0, 0], "encoding": [1, 1]}
        fields["G"] = {"name": ["GPS_numSat", "GPS_coord[0]", "GPS_coord[1]"],
                       "signed": [0, 1, 1], "predictor": [0, 7, 7], "encoding": [1, 0, 0]}
        fields["H"] = {"name": ["GPS_home[0]", "GPS_home[1]"],
                       "signed": [1, 1], "predictor": [0, 0], "encoding": [0, 0]}
        return fields

    def build(self):
        i_frame, p1, p2 = three_frame_body()
        frames = [
            i_frame,
            frame("H", svb(100), svb(200)),
            frame("G", uvb(8), svb(5), svb(-5)),
            frame("S", uvb(1), uvb(0)),
            p1,
            p2,
            frame("S", uvb(5), uvb(2)),
            frame("G", uvb(9), svb(10), svb(-10)),
        ]
        return (log_header(self.fields(), ("minthrottle:1070", "vbatref:420"))
                + b"".join(frames) + log_end())

    def test_slow_frames_align_to_nearest_main_frame(self):
        sessions, corrupted, _ = decode(self.build())
        assert corrupted == 0
        slow = sessions[0].flight_data.slow
        # Anchored at iterations 0 and 2; the tie at 1 goes to the earlier one
        assert slow["flightModeFlags"].values.tolist() == [1, 1, 5]
        assert slow["stateFlags"].values.tolist() == [0, 0, 2]
        assert len(slow["flightModeFlags"].time) == 3

    def test_gps_frames_add_home_coordinates(self):
        sessions, _, _ = decode(self.build())
        gps = sessions[0].flight_data.gps
        assert gps["GPS_numSat"].values.tolist() == [8, 8, 9]
        assert gps["GPS_coord[0]"].values.tolist() == [105, 105, 110]
        assert gps["GPS_coord[1]"].values.tolist() == [195, 195, 190]

    def test_main_frames_unaffected_by_auxiliary_frames(self):
        sessions, _, _ = decode(self.build())
        fd = sessions[0].flight_data
        assert fd.frame_count == 3
        assert fd.gyro[1].values.tolist() == [20, 22, 21]
