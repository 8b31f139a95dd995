import unittest
from pathlib import Path

import pytest

from mp3cd.burn import (
    BurnOrchestrator,
    BurnPhaseTracker,
    HdiutilBurner,
    PhaseThresholds,
    parse_disc_status,
    parse_progress_line,
)
from mp3cd.errors import BurnProcessFailure, DiscAbsent, DiscUnusable, ImageCreationFailure, Mp3cdError
from mp3cd.image import ImageBuilder
from mp3cd.models import BurnPhase, DiscStatus, SessionState
from mp3cd.output import OutputLocationResolver
from mp3cd.process import ProcessSupervisor
from fakes import FakeProc, FakeSpawner


BLANK_STATUS = """ Vendor   Product           Rev
 MATSHITA DVD-R   UJ-898     HE13

           Type: CD-R                 Name: /dev/disk2
       Sessions: 0                  Tracks: 0
   Overwritable:   00:00:00         blocks:        0 /   0.00MB /   0.00MiB
     Space Free:   79:57:74         blocks:   359849 / 736.97MB / 702.83MiB
     Space Used:   00:00:00         blocks:        0 /   0.00MB /   0.00MiB
    Writability: appendable, blank, overwritable
"""

RW_WITH_DATA_STATUS = """           Type: CD-RW                Name: /dev/disk2
       Sessions: 1                  Tracks: 1
    Writability: overwritable
"""

USED_CDR_STATUS = """           Type: CD-R                 Name: /dev/disk2
       Sessions: 1                  Tracks: 1
    Writability: closed
"""

NO_MEDIA_STATUS = """ Vendor   Product           Rev
 MATSHITA DVD-R   UJ-898     HE13

           Type: No Media Inserted
"""

ERASE_AND_WRITE = [5, 20, 50, 80, 100, 3, 10, 40, 70, 97, -1, -1]


@pytest.mark.parametrize(
    "text, expected",
    [
        (BLANK_STATUS, DiscStatus.BLANK),
        (RW_WITH_DATA_STATUS, DiscStatus.ERASABLE_WITH_DATA),
        ("Type: DVD+RW\nErasable: Yes", DiscStatus.ERASABLE_WITH_DATA),
        (USED_CDR_STATUS, DiscStatus.NON_ERASABLE),
        (NO_MEDIA_STATUS, DiscStatus.NO_DISC),
    ],
)
def test_parse_disc_status(text, expected):
    assert parse_disc_status(text) is expected


def test_parse_progress_line():
    assert parse_progress_line("PERCENT:12.500000") == 12
    assert parse_progress_line("PERCENT:12.6") == 13
    assert parse_progress_line("PERCENT:-1.000000") == -1
    assert parse_progress_line("MESSAGE:Preparing data for burn") is None
    assert parse_progress_line("PERCENT:abc") is None


class TestBurnPhaseTracker(unittest.TestCase):
    def _started(self, status=DiscStatus.BLANK, **kw):
        t = BurnPhaseTracker(**kw)
        t.check_disc()
        t.disc_status(status)
        t.start()
        return t

    def test_erase_then_write_then_finalize(self):
        t = self._started(DiscStatus.ERASABLE_WITH_DATA)
        self.assertIs(t.phase, BurnPhase.ERASING)
        phases = [t.observe(v) for v in ERASE_AND_WRITE]
        self.assertEqual(phases[:5], [BurnPhase.ERASING] * 5)
        self.assertEqual(phases[5:10], [BurnPhase.WRITING] * 5)
        self.assertEqual(phases[10:], [BurnPhase.FINALIZING] * 2)
        self.assertIs(t.exited(0), BurnPhase.SUCCEEDED)
        self.assertEqual(t.overall_fraction, 1.0)

    def test_blank_disc_goes_straight_to_writing(self):
        t = self._started()
        self.assertIs(t.phase, BurnPhase.WRITING)
        self.assertFalse(t.session.erase_required)
        for v in (10, 50, 96):
            t.observe(v)
        self.assertIs(t.observe(-1), BurnPhase.FINALIZING)

    def test_indeterminate_before_threshold_does_not_finalize(self):
        t = self._started()
        t.observe(-1)
        t.observe(40)
        self.assertIs(t.observe(-1), BurnPhase.WRITING)

    def test_small_dip_during_erase_is_not_a_restart(self):
        t = self._started(DiscStatus.ERASABLE_WITH_DATA)
        for v in (10, 30, 15, 40):
            t.observe(v)
        self.assertIs(t.phase, BurnPhase.ERASING)

    def test_finalizing_never_reverts(self):
        t = self._started()
        t.observe(99)
        t.observe(-1)
        for v in (0, 5, 100, -1):
            self.assertIs(t.observe(v), BurnPhase.FINALIZING)

    def test_custom_thresholds(self):
        t = self._started(DiscStatus.ERASABLE_WITH_DATA, thresholds=PhaseThresholds(erase_high_watermark=30, erase_restart_ceiling=10))
        for v in (10, 35):
            t.observe(v)
        self.assertIs(t.observe(5), BurnPhase.WRITING)

    def test_overall_fraction_is_monotonic(self):
        t = self._started(DiscStatus.ERASABLE_WITH_DATA)
        fractions = []
        for v in ERASE_AND_WRITE:
            t.observe(v)
            fractions.append(t.overall_fraction)
        self.assertEqual(fractions, sorted(fractions))
        self.assertLess(fractions[-1], 1.0)

    def test_exit_while_erasing_is_still_success(self):
        t = self._started(DiscStatus.ERASABLE_WITH_DATA)
        for v in (10, 60, 90):
            t.observe(v)
        self.assertIs(t.exited(0), BurnPhase.SUCCEEDED)

    def test_nonzero_exit_fails_with_process_error(self):
        t = self._started()
        t.observe(30)
        self.assertIs(t.exited(5, "hdiutil: burn failed - Device failed"), BurnPhase.FAILED)
        self.assertIsInstance(t.session.error, BurnProcessFailure)
        self.assertEqual(t.session.error.phase, "writing")
        self.assertIn("Device failed", t.session.error.detail)

    def test_disc_errors(self):
        t = BurnPhaseTracker()
        t.check_disc()
        self.assertIs(t.disc_status(DiscStatus.NO_DISC), BurnPhase.FAILED)
        self.assertIsInstance(t.session.error, DiscAbsent)

        t = BurnPhaseTracker()
        t.check_disc()
        t.disc_status(DiscStatus.NON_ERASABLE)
        self.assertIsInstance(t.session.error, DiscUnusable)

    def test_illegal_transitions(self):
        t = BurnPhaseTracker()
        with self.assertRaises(RuntimeError):
            t.start()
        t.check_disc()
        with self.assertRaises(RuntimeError):
            t.check_disc()

    def test_cancel_is_not_an_error(self):
        t = self._started()
        self.assertIs(t.cancel(), BurnPhase.FAILED)
        self.assertTrue(t.cancelled)
        self.assertIsNone(t.session.error)
        # terminal states absorb later input
        self.assertIs(t.observe(50), BurnPhase.FAILED)
        self.assertIs(t.exited(0), BurnPhase.FAILED)


def test_burn_command_flags():
    burner = HdiutilBurner(ProcessSupervisor(FakeSpawner(lambda cmd: FakeProc())))
    cmd = burner.burn_command(Path("/tmp/x.iso"), "MIX", erase=True, simulate=False)
    assert cmd == ["hdiutil", "burn", "-noverifyburn", "-puppetstrings", "-erase", "/tmp/x.iso"]
    cmd = burner.burn_command(Path("/tmp/x.iso"), "MIX", erase=False, simulate=True)
    assert "-testburn" in cmd and "-erase" not in cmd


class _DoneCoordinator:
    """Conversion session stand-in with finished folders."""

    def __init__(self, folders, state=SessionState.ALL_DONE):
        self.state = state
        self._folders = folders

    def completed_folders(self):
        return list(self._folders)


class _Drive:
    """Scripted drutil/hdiutil behaviour."""

    def __init__(self, status=BLANK_STATUS, burn_percents=(10, 50, 96, -1), burn_rc=0, image_rc=0):
        self.status = status
        self.burn_percents = list(burn_percents)
        self.burn_rc = burn_rc
        self.image_rc = image_rc

    def __call__(self, cmd):
        if cmd[0] == "drutil":
            return FakeProc(self.status.splitlines())
        if cmd[1] == "makehybrid":
            if self.image_rc == 0:
                Path(cmd[cmd.index("-o") + 1]).write_bytes(b"iso")
                return FakeProc([])
            return FakeProc(["hdiutil: makehybrid failed - No space left on device"], returncode=self.image_rc)
        lines = [f"PERCENT:{v:.6f}" for v in self.burn_percents]
        return FakeProc(["MESSAGE:Burning", *lines], returncode=self.burn_rc)


@pytest.fixture
def converted(tmp_path):
    resolver = OutputLocationResolver(tmp_path / "work", session_id="s")
    for folder_id, names in (("f1", ["a.mp3", "b.mp3"]), ("f2", ["c.mp3"])):
        d = resolver.resolve(folder_id)
        for n in names:
            (d / n).write_bytes(b"mp3")
    coordinator = _DoneCoordinator([("f1", "First Album"), ("f2", "Second: Album")])
    return resolver, coordinator


def _orchestrator(converted, drive):
    resolver, coordinator = converted
    spawner = FakeSpawner(drive)
    sup = ProcessSupervisor(spawner, grace_s=5)
    orch = BurnOrchestrator(HdiutilBurner(sup), ImageBuilder(sup), resolver, coordinator)
    return orch, spawner


def test_full_burn_with_erase(converted):
    drive = _Drive(status=RW_WITH_DATA_STATUS, burn_percents=ERASE_AND_WRITE)
    orch, spawner = _orchestrator(converted, drive)
    events = list(orch.start_burn("MIX"))

    phases = []
    for e in events:
        if not phases or phases[-1] is not e.phase:
            phases.append(e.phase)
    assert phases == [
        BurnPhase.CHECKING_DISC,
        BurnPhase.ERASING,
        BurnPhase.WRITING,
        BurnPhase.FINALIZING,
        BurnPhase.SUCCEEDED,
    ]
    assert events[-1].overall_fraction_done == 1.0
    image_cmd, probe_cmd, burn_cmd = spawner.calls
    assert image_cmd[:2] == ["hdiutil", "makehybrid"]
    assert image_cmd[image_cmd.index("-joliet-volume-name") + 1] == "MIX"
    assert probe_cmd == ["drutil", "status"]
    assert "-erase" in burn_cmd

    staging = Path(image_cmd[-1])
    assert sorted(p.name for p in staging.iterdir()) == ["01-First Album", "02-Second_ Album"]
    assert sorted(p.name for p in (staging / "01-First Album").iterdir()) == ["a.mp3", "b.mp3"]


def test_no_disc_fails_without_burning(converted):
    orch, spawner = _orchestrator(converted, _Drive(status=NO_MEDIA_STATUS))
    events = list(orch.start_burn("MIX"))

    assert events[-1].phase is BurnPhase.FAILED
    assert isinstance(events[-1].error, DiscAbsent)
    assert not any(cmd[1] == "burn" for cmd in spawner.calls)


def test_non_erasable_disc_is_unusable(converted):
    orch, spawner = _orchestrator(converted, _Drive(status=USED_CDR_STATUS))
    events = list(orch.start_burn("MIX"))
    assert isinstance(events[-1].error, DiscUnusable)
    assert not any(cmd[1] == "burn" for cmd in spawner.calls)


def test_simulated_burn_never_erases(converted):
    orch, spawner = _orchestrator(converted, _Drive(status=RW_WITH_DATA_STATUS))
    events = list(orch.start_burn("MIX", simulate=True))
    burn_cmd = spawner.calls[-1]
    assert "-testburn" in burn_cmd
    assert "-erase" not in burn_cmd
    assert BurnPhase.ERASING not in {e.phase for e in events}
    assert events[-1].phase is BurnPhase.SUCCEEDED


def test_burn_failure_then_burn_another(converted):
    drive = _Drive(burn_rc=1)
    orch, spawner = _orchestrator(converted, drive)
    events = list(orch.start_burn("MIX"))
    assert events[-1].phase is BurnPhase.FAILED
    assert isinstance(events[-1].error, BurnProcessFailure)
    assert events[-1].error.returncode == 1

    # the converted files and the image are reused for the next disc
    drive.burn_rc = 0
    events = list(orch.burn_another())
    assert events[-1].phase is BurnPhase.SUCCEEDED
    assert [c[1] for c in spawner.calls].count("makehybrid") == 1
    resolver, _ = converted
    assert (resolver.folder_dir("f1") / "a.mp3").read_bytes() == b"mp3"


def test_start_burn_requires_finished_conversion(tmp_path):
    resolver = OutputLocationResolver(tmp_path, session_id="s")
    orch = BurnOrchestrator(
        HdiutilBurner(ProcessSupervisor(FakeSpawner(_Drive()))),
        ImageBuilder(ProcessSupervisor(FakeSpawner(_Drive()))),
        resolver,
        _DoneCoordinator([("f", "F")], state=SessionState.PHASE2_RUNNING),
    )
    with pytest.raises(Mp3cdError):
        orch.start_burn("MIX")
    with pytest.raises(Mp3cdError):
        orch.burn_another()


def test_image_failure_raises(converted):
    orch, _ = _orchestrator(converted, _Drive(image_rc=1))
    with pytest.raises(ImageCreationFailure) as exc:
        orch.start_burn("MIX")
    assert "No space left" in exc.value.detail


def test_cancel_during_burn(converted):
    resolver, coordinator = converted
    procs = []

    def spawn(cmd):
        if cmd[1] == "burn":
            proc = FakeProc(["PERCENT:10.0"], block=True)
            procs.append(proc)
            return proc
        return _Drive()(cmd)

    sup = ProcessSupervisor(FakeSpawner(spawn), grace_s=5)
    orch = BurnOrchestrator(HdiutilBurner(sup), ImageBuilder(sup), resolver, coordinator)
    events = []
    for event in orch.start_burn("MIX"):
        events.append(event)
        if event.phase is BurnPhase.WRITING and event.raw_progress == 10:
            assert orch.cancel()
    assert not orch.cancel()

    assert procs[0].terminated
    assert events[-1].phase is BurnPhase.FAILED
    assert events[-1].error is None
