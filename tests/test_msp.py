import struct

import pytest
import serial

import bb_msp
from bb_apply import ApplyOrchestrator
from bb_common import ChannelError, ConnectionLostError, Recommendation
from bb_msp import (MSP_PID, MSP_PID_ADVANCED, MSP_SET_PID, MSP_SET_PID_ADVANCED,
                    CliLineChannel, DiffSnapshotStore, FCLink, MspParamChannel,
                    crc8_dvb_s2, msp_v2_decode, msp_v2_encode)

PID_PAYLOAD = bytes([45, 80, 30, 47, 84, 32, 45, 80, 0])


def msp_reply(cmd, payload=b"", error=False):
    body = struct.pack("<BHH", 0, cmd, len(payload)) + payload
    return (b"$X!" if error else b"$X>") + body + bytes([crc8_dvb_s2(body)])


def pid_advanced_payload(ff=(90, 95, 70)):
    data = bytearray(40)
    for a, f in enumerate(ff):
        struct.pack_into("<H", data, 32 + 2 * a, f)
    return bytes(data)


class FakeFC:
    """Serial port double that answers MSP requests and CLI lines."""

    def __init__(self):
        self.is_open = True
        self.rx = b""
        self.written = []
        self.msp = {MSP_PID: PID_PAYLOAD, MSP_PID_ADVANCED: pid_advanced_payload(),
                    MSP_SET_PID: b"", MSP_SET_PID_ADVANCED: b""}
        self.rejected = set()
        self.cli_replies = {}
        self.write_error = None
        self.open_kwargs = None
        self.cli = False

    def __call__(self, **kwargs):
        self.open_kwargs = kwargs
        return self

    @property
    def in_waiting(self):
        return len(self.rx)

    def read(self, n):
        data, self.rx = self.rx[:n], self.rx[n:]
        return data

    def write(self, data):
        if self.write_error is not None:
            raise self.write_error
        data = bytes(data)
        self.written.append(data)
        if data.startswith(b"$X<"):
            if self.cli:
                return len(data)
            cmd = struct.unpack_from("<H", data, 4)[0]
            if cmd in self.rejected:
                self.rx += msp_reply(cmd, error=True)
            elif cmd in self.msp:
                self.rx += msp_reply(cmd, self.msp[cmd])
        elif data == b"#":
            self.cli = True
            self.rx += b"\r\nEntering CLI Mode, type 'exit' to return\r\n# "
        else:
            line = data.decode("ascii").strip()
            if line == "exit noreboot":
                self.cli = False
                self.rx += b"exit noreboot\r\n# leaving CLI mode, no reboot\r\n"
                return len(data)
            reply = self.cli_replies.get(line, "")
            self.rx += (line + "\r\n" + reply + ("\r\n" if reply else "")).encode("ascii")
            if not reply.startswith("Rebooting"):
                self.rx += b"# "
        return len(data)

    def reset_input_buffer(self):
        self.rx = b""

    def reset_output_buffer(self):
        pass

    def close(self):
        self.is_open = False

    def sent_msp(self, cmd):
        for raw in self.written:
            decoded = msp_v2_decode(raw)
            if decoded and decoded[0] == cmd:
                return decoded[1]
        return None


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(bb_msp.time, "sleep", lambda s: None)


@pytest.fixture
def fc():
    return FakeFC()


@pytest.fixture
def link(fc):
    link = FCLink("/dev/ttyFAKE", timeout=0.2, serial_factory=fc)
    link.open()
    yield link
    link.close()


def test_crc8_dvb_s2_known_value():
    assert crc8_dvb_s2(b"") == 0
    assert crc8_dvb_s2(b"\x01") == 0xD5


def test_encode_frame_layout():
    frame = msp_v2_encode(MSP_PID, b"\x01\x02")
    assert frame[:3] == b"$X<"
    assert struct.unpack_from("<BHH", frame, 3) == (0, MSP_PID, 2)
    assert frame[8:10] == b"\x01\x02"
    assert frame[-1] == crc8_dvb_s2(frame[3:-1])


def test_decode_rejects_bad_crc_and_errors():
    good = msp_reply(MSP_PID, PID_PAYLOAD)
    assert msp_v2_decode(b"noise" + good) == (MSP_PID, PID_PAYLOAD)
    assert msp_v2_decode(good[:-1] + bytes([good[-1] ^ 0xFF])) is None
    assert msp_v2_decode(msp_reply(MSP_PID, error=True)) is None
    assert msp_v2_decode(good[:6]) is None


def test_open_passes_serial_settings(fc, link):
    assert fc.open_kwargs["port"] == "/dev/ttyFAKE"
    assert fc.open_kwargs["baudrate"] == 115200
    assert fc.open_kwargs["parity"] == serial.PARITY_NONE


def test_request_returns_payload(link):
    assert link.request(MSP_PID) == PID_PAYLOAD


def test_request_times_out_to_none(link):
    assert link.request(99) is None


def test_rejected_request_raises(fc, link):
    fc.rejected.add(MSP_SET_PID)
    with pytest.raises(ChannelError):
        link.request(MSP_SET_PID, PID_PAYLOAD)


def test_serial_failure_is_connection_lost(fc, link):
    fc.write_error = serial.SerialException("device reports readiness to read but returned no data")
    with pytest.raises(ConnectionLostError):
        link.request(MSP_PID)


def test_closed_link_is_connection_lost(link):
    link.close()
    with pytest.raises(ConnectionLostError):
        link.request(MSP_PID)


def test_read_pids(link):
    pids = MspParamChannel(link).read_pids()
    assert pids["roll"] == {"P": 45, "I": 80, "D": 30, "F": 90}
    assert pids["yaw"] == {"P": 45, "I": 80, "D": 0, "F": 70}


def test_write_pid_group_keeps_other_terms(fc, link):
    assert MspParamChannel(link).write_group("pid_pitch", {"D": 36})
    sent = fc.sent_msp(MSP_SET_PID)
    assert list(sent) == [45, 80, 30, 47, 84, 36, 45, 80, 0]


def test_write_feedforward_group(fc, link):
    assert MspParamChannel(link).write_group("feedforward", {"roll": 100})
    sent = fc.sent_msp(MSP_SET_PID_ADVANCED)
    assert struct.unpack_from("<3H", sent, 32) == (100, 95, 70)


def test_unknown_group(link):
    with pytest.raises(ChannelError):
        MspParamChannel(link).write_group("rates", {"roll": 1})


def test_cli_line_and_msp_exclusion(fc, link):
    channel = CliLineChannel(link)
    assert channel.send("set gyro_lpf1_static_hz = 200") == ""
    assert link.in_cli
    with pytest.raises(ChannelError):
        link.request(MSP_PID)


def test_cli_rejection(fc, link):
    fc.cli_replies["set gyro_lpf1_static_hz = 9999"] = "###ERROR: gyro_lpf1_static_hz: Invalid value"
    with pytest.raises(ChannelError):
        CliLineChannel(link).send("set gyro_lpf1_static_hz = 9999")


def test_groups_written_as_cli_lines_while_in_cli(fc, link):
    CliLineChannel(link).send("set dyn_notch_min_hz = 100")
    channel = MspParamChannel(link)
    assert channel.write_group("pid_roll", {"P": 50, "D": 35})
    assert channel.write_group("feedforward", {"yaw": 10})
    assert channel.last_mode == MspParamChannel.MODE_CLI
    lines = [w.decode("ascii").strip() for w in fc.written if w.endswith(b"\n")]
    assert lines[-3:] == ["set d_roll = 35", "set p_roll = 50", "set f_yaw = 10"]
    assert fc.sent_msp(MSP_SET_PID) is None


def test_save_reboot_is_connection_lost_when_expected(fc, link):
    fc.cli_replies["save"] = "Rebooting"
    link.expect_disconnect()
    with pytest.raises(ConnectionLostError):
        CliLineChannel(link).send("save")
    assert not link.in_cli


def test_save_reply_without_expected_disconnect(fc, link):
    assert CliLineChannel(link).send("save") == ""
    assert not link.disconnect_expected


def test_diff_snapshot_store(fc, link, tmp_path):
    fc.cli_replies["diff all"] = "# version\nset gyro_lpf1_static_hz = 250"
    store = DiffSnapshotStore(link, str(tmp_path / "snaps"))
    snapshot_id = store.create("pre apply!")
    assert snapshot_id.endswith("_pre_apply")
    assert "set gyro_lpf1_static_hz = 250" in store.load(snapshot_id)


def test_empty_diff_is_not_a_snapshot(fc, link, tmp_path):
    with pytest.raises(ChannelError):
        DiffSnapshotStore(link, str(tmp_path)).create("pre-apply")


def test_open_failure_is_channel_error():
    def missing_port(**kwargs):
        raise serial.SerialException("could not open port /dev/ttyNONE")

    with pytest.raises(ChannelError):
        FCLink("/dev/ttyNONE", serial_factory=missing_port).open()


def test_cli_exit_returns_to_msp(fc, link):
    link.cli_enter()
    link.cli_exit()
    assert not link.in_cli
    assert b"exit noreboot\n" in fc.written
    assert link.request(MSP_PID) == PID_PAYLOAD


def test_snapshot_leaves_the_cli_it_opened(fc, link, tmp_path):
    fc.cli_replies["diff all"] = "# version\nset gyro_lpf1_static_hz = 250"
    DiffSnapshotStore(link, str(tmp_path)).create("pre-apply")
    assert not link.in_cli


def test_snapshot_keeps_an_open_cli_session(fc, link, tmp_path):
    fc.cli_replies["diff all"] = "# version\nset gyro_lpf1_static_hz = 250"
    link.cli_enter()
    DiffSnapshotStore(link, str(tmp_path)).create("pre-apply")
    assert link.in_cli
    assert b"exit noreboot\n" not in fc.written


def test_snapshot_write_failure_is_channel_error(fc, link, tmp_path):
    fc.cli_replies["diff all"] = "# version\nset gyro_lpf1_static_hz = 250"
    blocker = tmp_path / "snaps"
    blocker.write_text("not a directory")
    with pytest.raises(ChannelError):
        DiffSnapshotStore(link, str(blocker)).create("pre-apply")


def test_pid_only_apply_with_snapshot_writes_over_msp(fc, link, tmp_path):
    fc.cli_replies["diff all"] = "# version\nset gyro_lpf1_static_hz = 250"
    fc.cli_replies["save"] = "Rebooting"
    param = MspParamChannel(link)
    orch = ApplyOrchestrator(CliLineChannel(link), param,
                             snapshots=DiffSnapshotStore(link, str(tmp_path)), connection=link)
    orch.confirm()
    result = orch.apply(pid_recs=[Recommendation("pid_roll_d", 30, 35, "overshoot")],
                        create_snapshot=True)
    assert result.success
    assert result.rebooted
    assert result.applied_pids == 1
    assert param.last_mode == MspParamChannel.MODE_MSP
    assert list(fc.sent_msp(MSP_SET_PID)) == [45, 80, 35, 47, 84, 32, 45, 80, 0]
    assert [w for w in fc.written if w.startswith(b"set ")] == []
