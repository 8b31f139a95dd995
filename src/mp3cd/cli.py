from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

from loguru import logger

from mp3cd.artwork import find_cover_image
from mp3cd.burn import BurnOrchestrator, HdiutilBurner, PhaseThresholds
from mp3cd.config import Mp3cdSettings, cli_overrides_from_args
from mp3cd.coordinator import ConversionCoordinator
from mp3cd.errors import Mp3cdError
from mp3cd.ffmpeg_check import probe_burn_tools, probe_ffmpeg
from mp3cd.image import ImageBuilder
from mp3cd.logging import bind_run, configure
from mp3cd.models import BurnPhase, JobState, SessionState
from mp3cd.process import ProcessSupervisor
from mp3cd.scanner import folder_id_for, scan_folder


EXIT_OK = 0
EXIT_WITH_FILE_ERRORS = 2
EXIT_PREFLIGHT_FAILED = 3
EXIT_BURN_FAILED = 4
EXIT_INTERRUPTED = 130


def _empty_summary() -> Dict[str, Any]:
    return {
        "folders": 0,
        "files": 0,
        "converted": 0,
        "failed": 0,
        "cancelled": 0,
        "lossless_kbps": None,
        "manual_bitrate": False,
        "over_capacity": False,
        "output_bytes": 0,
        "capacity_bytes": 0,
        "errors": [],
    }


def cmd_preflight(cfg: Mp3cdSettings) -> int:
    st = probe_ffmpeg(cfg.ffmpeg_path)
    if not st.available:
        logger.error("ffmpeg: NOT FOUND")
        if st.error:
            logger.error(st.error)
        return EXIT_PREFLIGHT_FAILED
    logger.info(f"ffmpeg: {st.ffmpeg_path}")
    logger.info(f"version: {st.ffmpeg_version}")
    logger.info(f"libmp3lame (ffmpeg): {'YES' if st.has_libmp3lame else 'NO'}")

    bt = probe_burn_tools(cfg.hdiutil_path, cfg.drutil_path)
    logger.info(f"burn tools: {'FOUND' if bt.available else 'NOT FOUND'}")
    if not bt.available:
        logger.warning(f"{bt.error}; converting works, burning does not")

    if not st.has_libmp3lame:
        logger.error("ffmpeg was built without libmp3lame; MP3 encoding is unavailable")
        return EXIT_PREFLIGHT_FAILED
    return EXIT_OK


def _add_folders(coordinator: ConversionCoordinator, folders: List[str], embed_art: bool) -> int:
    total = 0
    for raw in folders:
        folder = Path(raw).expanduser()
        if not folder.is_dir():
            logger.error(f"Not a directory: {folder}")
            continue
        records = scan_folder(folder)
        if not records:
            logger.warning(f"No audio files in {folder}")
            continue
        cover = find_cover_image(folder) if embed_art else None
        coordinator.add_folder(folder_id_for(folder), records, name=folder.name, artwork=cover)
        logger.info(f"{folder.name}: {len(records)} files")
        total += len(records)
    return total


def _wait_with_progress(coordinator: ConversionCoordinator) -> None:
    sub = coordinator.subscribe_aggregate()
    last_step = -1
    try:
        while coordinator.state not in (SessionState.ALL_DONE, SessionState.IDLE):
            event = sub.get(timeout=0.5)
            if event is None:
                continue
            step = int(event.overall_fraction_done * 10)
            if step != last_step:
                last_step = step
                bitrate = f", lossless {event.resolved_bitrate}" if event.resolved_bitrate else ""
                logger.info(f"{event.state.value}: {event.overall_fraction_done:.0%}{bitrate}")
    finally:
        sub.close()


def _summary(coordinator: ConversionCoordinator, cfg: Mp3cdSettings, folders: int) -> Dict[str, Any]:
    summary = _empty_summary()
    jobs = coordinator.jobs()
    resolved = coordinator.resolved_bitrate
    summary.update(
        folders=folders,
        files=len(jobs),
        converted=sum(1 for j in jobs if j.state is JobState.COMPLETED),
        failed=sum(1 for j in jobs if j.state is JobState.FAILED),
        cancelled=sum(1 for j in jobs if j.state is JobState.CANCELLED),
        lossless_kbps=resolved.kbps if resolved else None,
        manual_bitrate=bool(resolved and resolved.manual),
        over_capacity=coordinator.over_capacity,
        output_bytes=coordinator.measured_output_bytes(),
        capacity_bytes=cfg.target_capacity_bytes,
        errors=[j.error.as_dict() for j in jobs if j.state is JobState.FAILED and j.error is not None],
    )
    return summary


def cmd_convert(cfg: Mp3cdSettings, folders: List[str], *, keep_open: bool = False):
    """Convert folders; returns (exit_code, coordinator). The coordinator is closed unless keep_open."""
    coordinator = ConversionCoordinator.from_settings(cfg)
    logger.info(f"output: {coordinator.resolver.bundle_path or coordinator.resolver.session_dir}")
    try:
        count = _add_folders(coordinator, folders, cfg.embed_album_art)
        if count == 0:
            logger.error("Nothing to convert")
            coordinator.close()
            return EXIT_WITH_FILE_ERRORS, None
        _wait_with_progress(coordinator)
    except KeyboardInterrupt:
        logger.warning("Interrupted; cancelling running encodes")
        coordinator.close()
        return EXIT_INTERRUPTED, None

    summary = _summary(coordinator, cfg, len(folders))
    for job in coordinator.failed_jobs():
        logger.error(f"FAILED {job.record.path}: {job.error}")
        if job.error is not None and job.error.detail:
            logger.debug(job.error.detail)
    if coordinator.over_capacity:
        logger.warning("Lossless material does not fit at the lowest bitrate; the disc will be over capacity")
    print(json.dumps(summary, indent=2))
    code = EXIT_WITH_FILE_ERRORS if summary["failed"] else EXIT_OK
    if not keep_open:
        coordinator.close()
        return code, None
    return code, coordinator


def _run_burn(events) -> bool:
    last = None
    last_event = None
    for event in events:
        if event.phase is not last:
            logger.info(f"burn: {event.phase.value}")
            last = event.phase
        if event.phase is BurnPhase.FAILED and event.error is not None:
            logger.error(str(event.error))
            if event.error.detail:
                logger.error(event.error.detail)
        if event.raw_progress is not None and event.raw_progress >= 0:
            logger.debug(f"burn progress {event.raw_progress} ({event.overall_fraction_done:.0%})")
        last_event = event
    return last_event is not None and last_event.phase is BurnPhase.SUCCEEDED


def cmd_burn(cfg: Mp3cdSettings, folders: List[str], *, copies: int = 1) -> int:
    code, coordinator = cmd_convert(cfg, folders, keep_open=True)
    if coordinator is None:
        return code
    try:
        if code != EXIT_OK:
            logger.error("Some files failed to convert; not burning")
            return code
        supervisor = ProcessSupervisor(grace_s=cfg.cancel_grace_s)
        orchestrator = BurnOrchestrator(
            HdiutilBurner(supervisor, hdiutil=cfg.hdiutil_path, drutil=cfg.drutil_path),
            ImageBuilder(supervisor, hdiutil=cfg.hdiutil_path),
            coordinator.resolver,
            coordinator,
            thresholds=PhaseThresholds(
                erase_high_watermark=cfg.erase_high_watermark,
                erase_restart_ceiling=cfg.erase_restart_ceiling,
                finalize_threshold=cfg.finalize_threshold,
            ),
        )
        try:
            ok = _run_burn(orchestrator.start_burn(cfg.volume_label, simulate=cfg.simulate_burn))
            for n in range(2, copies + 1):
                if not ok:
                    break
                input(f"Insert disc {n} of {copies} and press Enter...")
                ok = _run_burn(orchestrator.burn_another(simulate=cfg.simulate_burn))
        except Mp3cdError as e:
            logger.error(str(e))
            if e.detail:
                logger.error(e.detail)
            return EXIT_BURN_FAILED
        except KeyboardInterrupt:
            orchestrator.cancel()
            return EXIT_INTERRUPTED
        return EXIT_OK if ok else EXIT_BURN_FAILED
    finally:
        coordinator.close()


def _add_conversion_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("folders", nargs="+", help="Music folders, in disc order")
    p.add_argument("--out", dest="output_root", default=None, help="Working area for converted files (default: temp dir)")
    p.add_argument("--bundle", dest="bundle_path", default=None, help="Persistent bundle directory to convert into")
    p.add_argument("--workers", type=int, default=None, help="Parallel encoders, 2..8 (default: CPU cores)")
    p.add_argument(
        "--bitrate",
        dest="manual_bitrate_kbps",
        type=int,
        default=None,
        help="Fixed bitrate for lossless files instead of the computed one",
    )
    p.add_argument(
        "--capacity",
        dest="target_capacity_bytes",
        type=int,
        default=None,
        help="Disc capacity in bytes (default 700000000)",
    )
    p.add_argument(
        "--embed-art",
        dest="embed_album_art",
        action="store_true",
        default=None,
        help="Embed folder artwork; MP3s without art are re-encoded to carry it",
    )


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="mp3cd")
    # Config/Logging options (defaults resolved via Mp3cdSettings)
    p.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ~/.config/mp3cd/config.toml)",
    )
    p.add_argument(
        "--write-config",
        action="store_true",
        help="Write current effective settings to the config file and exit",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Console log level (DEBUG, INFO, WARNING, ERROR)",
    )
    p.add_argument(
        "--log-json",
        dest="log_json",
        default=None,
        help="Path to write JSON lines log (structured events)",
    )
    sub = p.add_subparsers(dest="cmd")

    sub.add_parser("preflight", help="Check ffmpeg/libmp3lame and the burn tools")

    p_convert = sub.add_parser("convert", help="Convert folders to a CD-sized MP3 set")
    _add_conversion_args(p_convert)

    p_burn = sub.add_parser("burn", help="Convert folders, build the disc image and burn it")
    _add_conversion_args(p_burn)
    p_burn.add_argument("--label", dest="volume_label", default=None, help="Disc volume label")
    p_burn.add_argument(
        "--simulate",
        dest="simulate_burn",
        action="store_true",
        default=None,
        help="Test burn with the laser off",
    )
    p_burn.add_argument("--copies", type=int, default=1, help="Burn this many discs from the same image")

    args = p.parse_args(argv)
    overrides = cli_overrides_from_args(args)
    cfg = Mp3cdSettings.load(
        config_path=Path(args.config_path).expanduser() if args.config_path else None,
        overrides=overrides,
    )

    # Write config and exit if requested
    if args.write_config:
        written = cfg.write(Path(args.config_path).expanduser() if args.config_path else None)
        print(f"Config written to: {written}")
        return EXIT_OK
    if not args.cmd:
        p.error("a command is required")

    configure(cfg.log_level, cfg.log_json)
    bind_run()
    if args.cmd == "preflight":
        return cmd_preflight(cfg)
    if args.cmd == "convert":
        code, _ = cmd_convert(cfg, args.folders)
        return code
    if args.cmd == "burn":
        return cmd_burn(cfg, args.folders, copies=max(1, args.copies))
    p.error("unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
