#!/usr/bin/env python3
"""
Write accepted recommendations back to the flight controller.

ApplyOrchestrator sequences one apply over two channels that share the same
physical link:

  snapshot  optional rollback point, taken before any write
  filter    "set <key> = <value>" lines on the line channel
  pid       one structured write per PID axis, one for feedforward
  reboot    "save" on the line channel; the FC reboots and drops the link

The connection collaborator is told the disconnect is coming right before
"save", so losing the link there counts as success.

Collaborator interfaces (see bb_msp for the serial implementations):

  line_channel.send(line) -> reply text, raises ChannelError on rejection
  param_channel.write_group(group, values) -> bool
  snapshots.create(label) -> snapshot id
  connection.expect_disconnect() / connection.clear_expected_disconnect()
"""

import logging
import threading

from bb_common import (AXIS_NAMES, BBTuneError, ChannelError, ConnectionLostError,
                       clamp, report)

log = logging.getLogger("bbtune.apply")

# Orchestrator states
IDLE = "idle"
CONFIRMING = "confirming"
APPLYING = "applying"
DONE = "done"
ERROR = "error"

# Progress / failure stages
STAGE_SNAPSHOT = "snapshot"
STAGE_FILTER = "filter"
STAGE_PID = "pid"
STAGE_REBOOT = "reboot"

PID_TERMS = {"p": "P", "i": "I", "d": "D"}
FEEDFORWARD_GROUP = "feedforward"


class ApplyBusyError(BBTuneError):
    """Another apply is already running on this orchestrator."""


class ApplyStateError(BBTuneError):
    """The requested transition is not allowed from the current state."""


class ApplyResult:
    def __init__(self):
        self.success = False
        self.applied_filters = 0
        self.applied_pids = 0
        self.snapshot_id = None
        self.rebooted = False
        self.failed_stage = None
        self.error = None

    def as_dict(self):
        return {
            "success": self.success,
            "applied_filters": self.applied_filters,
            "applied_pids": self.applied_pids,
            "snapshot_id": self.snapshot_id,
            "rebooted": self.rebooted,
            "failed_stage": self.failed_stage,
            "error": self.error,
        }

    def __repr__(self):
        status = "ok" if self.success else f"failed at {self.failed_stage}"
        return (f"<ApplyResult {status}: {self.applied_filters} filter, "
                f"{self.applied_pids} pid, rebooted={self.rebooted}>")


def _setting_value(value):
    return int(round(value))


def group_pid_writes(pid_recs, feedforward_recs=()):
    """Turn PID/feedforward recommendations into ordered group writes.

    Returns [(group, {key: value}, rec count)], roll/pitch/yaw then
    feedforward. Settings that name no known axis/term are skipped.
    """
    groups = {}
    counts = {}
    for rec in list(pid_recs) + list(feedforward_recs):
        parts = rec.setting.split("_")
        if len(parts) != 3 or parts[0] != "pid" or parts[1] not in AXIS_NAMES:
            log.warning(f"Skipping unknown PID setting '{rec.setting}'")
            continue
        axis, term = parts[1], parts[2].lower()
        value = _setting_value(rec.recommended)
        if term == "f":
            group, key = FEEDFORWARD_GROUP, axis
        elif term in PID_TERMS:
            group, key, value = f"pid_{axis}", PID_TERMS[term], clamp(value, 0, 255)
        else:
            log.warning(f"Skipping unknown PID setting '{rec.setting}'")
            continue
        groups.setdefault(group, {})[key] = value
        counts[group] = counts.get(group, 0) + 1

    order = [f"pid_{axis}" for axis in AXIS_NAMES] + [FEEDFORWARD_GROUP]
    return [(g, groups[g], counts[g]) for g in order if g in groups]


class ApplyOrchestrator:
    """State machine: idle -> confirming -> applying -> done | error.

    confirming is only a gate for the caller; apply() runs from there.
    Only one apply may run at a time.
    """

    def __init__(self, line_channel, param_channel, snapshots=None, connection=None):
        self.line_channel = line_channel
        self.param_channel = param_channel
        self.snapshots = snapshots
        self.connection = connection
        self.state = IDLE
        self._lock = threading.Lock()

    def confirm(self):
        if self.state == APPLYING:
            raise ApplyStateError("cannot confirm while an apply is running")
        self.state = CONFIRMING
        return self.state

    def cancel(self):
        if self.state == APPLYING:
            raise ApplyStateError("cannot cancel a running apply")
        self.state = IDLE
        return self.state

    def apply(self, filter_recs=(), pid_recs=(), feedforward_recs=(),
              create_snapshot=False, progress=None):
        filter_recs = list(filter_recs)
        pid_recs = list(pid_recs)
        feedforward_recs = list(feedforward_recs)
        if not (filter_recs or pid_recs or feedforward_recs):
            raise ValueError("no recommendations to apply")

        if not self._lock.acquire(blocking=False):
            raise ApplyBusyError("an apply is already in progress")
        try:
            if self.state != CONFIRMING:
                raise ApplyStateError(f"apply() needs state '{CONFIRMING}', not '{self.state}'")
            self.state = APPLYING
            try:
                result = self._run(filter_recs, pid_recs, feedforward_recs,
                                   create_snapshot, progress)
            except BaseException:
                self.state = ERROR
                raise
            self.state = DONE if result.success else ERROR
            return result
        finally:
            self._lock.release()

    def _run(self, filter_recs, pid_recs, feedforward_recs, create_snapshot, progress):
        result = ApplyResult()
        stage = STAGE_SNAPSHOT

        def emit(message, percent):
            report(progress, stage=stage, message=message, percent=percent)

        try:
            if create_snapshot:
                emit("Creating configuration snapshot", 5)
                if self.snapshots is None:
                    raise ChannelError("no snapshot store configured")
                result.snapshot_id = self.snapshots.create("pre-apply")
                log.info(f"Snapshot {result.snapshot_id} created")

            stage = STAGE_FILTER
            for n, rec in enumerate(filter_recs):
                line = f"set {rec.setting} = {_setting_value(rec.recommended)}"
                emit(line, 10 + round(30 * n / len(filter_recs)))
                self.line_channel.send(line)
                result.applied_filters += 1

            stage = STAGE_PID
            writes = group_pid_writes(pid_recs, feedforward_recs)
            for n, (group, values, count) in enumerate(writes):
                emit(f"Writing {group}", 40 + round(40 * n / len(writes)))
                try:
                    ok = self.param_channel.write_group(group, values)
                except ConnectionLostError:
                    raise
                except Exception as e:
                    raise ChannelError(f"{group}: {e}") from e
                if not ok:
                    raise ChannelError(f"{group}: write not acknowledged")
                result.applied_pids += count

            stage = STAGE_REBOOT
            emit("Saving and rebooting", 90)
            self._commit(result)
            result.success = True
            emit("Done", 100)
        except BBTuneError as e:
            result.failed_stage = stage
            result.error = str(e)
            log.error(f"Apply failed at {stage}: {e}")
        except Exception as e:
            result.failed_stage = stage
            result.error = f"{type(e).__name__}: {e}"
            log.exception(f"Apply failed at {stage}")
        return result

    def _commit(self, result):
        if self.connection is not None:
            self.connection.expect_disconnect()
        try:
            self.line_channel.send("save")
        except ConnectionLostError:
            result.rebooted = True
            log.info("Link dropped after save, FC is rebooting")
        except BaseException:
            if self.connection is not None:
                self.connection.clear_expected_disconnect()
            raise
