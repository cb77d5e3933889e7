from __future__ import annotations

import argparse
import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .backend.http import VIDEO_CONTENT_TYPES
from .backend.session import ConnectionManager
from .chunks import ChunkResource
from .config import BackendSettings, ChunkSettings, PayloadSettings, StitchSettings, load_profile
from .doctor import run_doctor
from .errors import ChunkflowError
from .logging_config import parse_level, setup_logging
from .media import count_frames, ffprobe_image_size, target_resolution
from .payload import HEIGHT, WIDTH, FieldMap, load_template
from .pipeline import RenderRequest, execute_job, render_chunked
from .stitcher import OutputStitcher


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _parse_pairs(items: Optional[List[str]], what: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in items or []:
        if "=" not in item:
            raise SystemExit(f"{what} must be NAME=VALUE, got {item!r}")
        name, value = item.split("=", 1)
        out[name.strip()] = value
    return out


def _kind_for(path: Path) -> str:
    return "video" if path.suffix.lower() in VIDEO_CONTENT_TYPES else "image"


def _template_path(args: argparse.Namespace, payload: PayloadSettings) -> Path:
    template = args.template or payload.template
    if template is None:
        raise SystemExit("No payload template: pass --template or set payload.template in the profile")
    return Path(template)


def cmd_run(args: argparse.Namespace) -> None:
    profile = load_profile(args.profile)
    backend = BackendSettings.from_profile(profile)
    chunk_settings = ChunkSettings.from_profile(profile)
    stitch_settings = StitchSettings.from_profile(profile)
    payload = PayloadSettings.from_profile(profile)

    template = load_template(_template_path(args, payload))
    video: Path = args.video
    total_frames = args.frames if args.frames is not None else count_frames(video)

    values: Dict[str, Any] = dict(payload.values)
    values.update({k: _parse_value(v) for k, v in _parse_pairs(args.value, "--value").items()})

    resources = [ChunkResource(args.video_field, video, "video")]
    if args.reference is not None:
        resources.append(ChunkResource(args.reference_field, args.reference, _kind_for(args.reference)))
        w, h = ffprobe_image_size(args.reference)
        values[WIDTH], values[HEIGHT] = target_resolution(w, h)
    for name, path in _parse_pairs(args.resource, "--resource").items():
        resources.append(ChunkResource(name, Path(path), _kind_for(Path(path))))

    request = RenderRequest(
        template=template,
        total_frames=total_frames,
        stem=args.stem or video.stem,
        dest_dir=args.out or video.parent,
        resources=resources,
        values=values,
        chunk_size=args.chunk_size,
    )

    manager = ConnectionManager(backend)
    cancel = threading.Event()

    def on_prog(pct: float, msg: str) -> None:
        print(f"\r{int(pct):3d}% {msg[:60]:60s}", end="", flush=True)

    try:
        session = manager.connect(cancel=cancel)
    except ChunkflowError as e:
        manager.close()
        raise SystemExit(f"Cannot reach backend: {e}")
    try:
        outcome = render_chunked(
            manager,
            session,
            request,
            chunk_settings=chunk_settings,
            fields=FieldMap(payload.fields),
            stitch_settings=stitch_settings,
            cancel=cancel,
            on_progress=on_prog,
        )
    except KeyboardInterrupt:
        cancel.set()
        raise
    finally:
        manager.disconnect(session)
        manager.close()

    print()
    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))
    else:
        print(outcome.message)
    if not outcome.success:
        raise SystemExit(1)


def cmd_submit(args: argparse.Namespace) -> None:
    profile = load_profile(args.profile)
    backend = BackendSettings.from_profile(profile)
    chunk_settings = ChunkSettings.from_profile(profile)
    payload = load_template(args.payload)

    manager = ConnectionManager(backend)
    session = None
    try:
        session = manager.connect()
        result = execute_job(
            manager,
            session,
            payload,
            timeout_s=args.timeout or chunk_settings.job_timeout_s,
            fallback_after_s=None if args.no_fallback else chunk_settings.fallback_after_s,
            on_progress=lambda ev: print(f"\rstep {ev.value}/{ev.max}", end="", flush=True),
        )
    except ChunkflowError as e:
        print()
        raise SystemExit(f"Job failed: {type(e).__name__}: {e}")
    finally:
        if session is not None:
            manager.disconnect(session)
        manager.close()

    print()
    print(f"Prompt {result.correlation_id} finished ({result.resolved_by.value})")
    if result.output_ref is not None:
        print("Output:", result.output_ref.filename)


def cmd_stitch(args: argparse.Namespace) -> None:
    profile = load_profile(args.profile)
    stitcher = OutputStitcher(StitchSettings.from_profile(profile))
    try:
        out = stitcher.stitch(args.chunks, args.out, on_status=print)
    except ChunkflowError as e:
        raise SystemExit(f"Stitch failed: {e}")
    print("Done:", out)


def cmd_queue(args: argparse.Namespace) -> None:
    manager = ConnectionManager(BackendSettings.from_profile(load_profile(args.profile)))
    try:
        state = manager.get_queue()
    except ChunkflowError as e:
        raise SystemExit(f"Cannot read queue: {e}")
    finally:
        manager.close()
    print(f"Running ({len(state.running)}):")
    for pid in state.running:
        print(f"  {pid}")
    print(f"Pending ({len(state.pending)}):")
    for pid in state.pending:
        print(f"  {pid}")


def cmd_doctor(args: argparse.Namespace) -> None:
    rep = run_doctor(BackendSettings.from_profile(load_profile(args.profile)))
    print("chunkflow doctor\n")
    for name, data in rep.checks.items():
        print(f"- {name}:")
        for k, v in data.items():
            print(f"    {k}: {v}")
    print("\nOK" if rep.ok else "\nNOT OK (fix missing requirements above)")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="chunkflow", description="Chunked generative video jobs against a node-graph backend.")
    parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING, ...")
    parser.add_argument("--log-file", type=Path, default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("run", help="Render a video in chunks and stitch the result.")
    r.add_argument("video", type=Path)
    r.add_argument("--profile", type=Path, default=None, help="Path to a YAML profile")
    r.add_argument("--template", type=Path, default=None, help="Payload template JSON (overrides the profile)")
    r.add_argument("--reference", type=Path, default=None, help="Reference image; also sets target width/height")
    r.add_argument("--video-field", type=str, default="video")
    r.add_argument("--reference-field", type=str, default="reference_image")
    r.add_argument("--resource", action="append", metavar="FIELD=PATH", help="Extra file uploaded per chunk")
    r.add_argument("--value", action="append", metavar="NAME=VALUE", help="Static payload value (JSON or string)")
    r.add_argument("--frames", type=int, default=None, help="Total frames (default: probe the video)")
    r.add_argument("--chunk-size", type=int, default=None)
    r.add_argument("--stem", type=str, default=None)
    r.add_argument("--out", type=Path, default=None, help="Directory for the stitched output")
    r.add_argument("--json", action="store_true", help="Print the full outcome as JSON")
    r.set_defaults(func=cmd_run)

    s = sub.add_parser("submit", help="Submit one payload as a single job and wait for it.")
    s.add_argument("payload", type=Path)
    s.add_argument("--profile", type=Path, default=None)
    s.add_argument("--timeout", type=float, default=None)
    s.add_argument("--no-fallback", action="store_true", help="Wait for the completion event only")
    s.set_defaults(func=cmd_submit)

    st = sub.add_parser("stitch", help="Join existing chunk files in the given order.")
    st.add_argument("out", type=Path)
    st.add_argument("chunks", type=Path, nargs="+")
    st.add_argument("--profile", type=Path, default=None)
    st.set_defaults(func=cmd_stitch)

    q = sub.add_parser("queue", help="Show the backend queue.")
    q.add_argument("--profile", type=Path, default=None)
    q.set_defaults(func=cmd_queue)

    d = sub.add_parser("doctor", help="Check ffmpeg/ffprobe and backend reachability.")
    d.add_argument("--profile", type=Path, default=None)
    d.set_defaults(func=cmd_doctor)

    args = parser.parse_args(argv)
    setup_logging(level=parse_level(args.log_level) if args.log_level else None, log_file=args.log_file)
    args.func(args)


if __name__ == "__main__":
    main()
