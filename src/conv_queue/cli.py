import argparse
import shutil
import sys
from pathlib import Path

from pydantic import ValidationError

from .catalog import FORMATS, QUALITY_PRESETS, available_formats
from .config import configure_logging, resolve_config
from .manager import QueueManager
from .models import ConversionTask


def check_ffmpeg() -> bool:
    """True if an ffmpeg binary is reachable (PATH or imageio-ffmpeg)."""
    if shutil.which("ffmpeg"):
        return True
    try:
        import imageio_ffmpeg
        imageio_ffmpeg.get_ffmpeg_exe()
        return True
    except RuntimeError:
        return False


def run_convert(args, config) -> int:
    """Queue every input, wait for the queue to drain, return exit status."""
    with QueueManager.from_config(config) as manager:
        for input_file in args.inputs:
            try:
                task = ConversionTask(
                    input_file=input_file,
                    format=args.format,
                    quality=args.quality,
                    size=args.size,
                    video_codec=args.video_codec,
                    audio_codec=args.audio_codec,
                    video_bitrate=args.video_bitrate,
                    audio_bitrate=args.audio_bitrate,
                )
            except ValidationError as e:
                print(f"  ✗ Skipped: {input_file} ({e.error_count()} validation error(s))")
                continue
            job_hash = manager.enqueue(task)
            print(f"  + Queued: {input_file} ({job_hash})")

        try:
            manager.wait_until_idle()
        except KeyboardInterrupt:
            print("\nInterrupted, stopping ffmpeg...")
            manager.close(wait=False)
            return 130

        status = manager.status()
        if status["state"] == "halted":
            print(f"Queue halted with {status['pending']} task(s) pending")
            return 1
    return 0


def run_serve(config) -> None:
    import uvicorn

    from .api.main import create_app

    uvicorn.run(create_app(config), host=config.server.host, port=config.server.port)


def main():
    parser = argparse.ArgumentParser(
        prog="conv-queue", description="Sequential media conversion queue"
    )
    parser.add_argument("--config", type=str, help="Config file (default: config/default.yaml)")
    parser.add_argument("--base-dir", type=str, help="Working directory (tmp/ and converted/)")
    parser.add_argument("--api-url", type=str, help="Notification listener base URL")
    parser.add_argument("--hw-accel", type=str, help="ffmpeg -hwaccel method")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # CONVERT
    convert_parser = subparsers.add_parser("convert", help="Convert files from <base-dir>/tmp")
    convert_parser.add_argument("inputs", nargs="+", help="Input file names under <base-dir>/tmp")
    convert_parser.add_argument(
        "--format", "-f", required=True, help=f"Target format ({', '.join(available_formats())})"
    )
    convert_parser.add_argument("--quality", "-q", choices=list(QUALITY_PRESETS), help="Quality level")
    convert_parser.add_argument("--size", "-s", type=str, help="Size/aspect (1280x720, ?x720, 50%%, 16:9)")
    convert_parser.add_argument("--video-codec", type=str, help="Override video codec")
    convert_parser.add_argument("--audio-codec", type=str, help="Override audio codec")
    convert_parser.add_argument("--video-bitrate", type=int, help="Override video bitrate (kbps)")
    convert_parser.add_argument("--audio-bitrate", type=int, help="Override audio bitrate (kbps)")
    convert_parser.add_argument(
        "--progress-formula", choices=["ratio", "legacy"], help="Progress percentage formula"
    )
    convert_parser.add_argument(
        "--halt-on-failure", action="store_true", default=None,
        help="Stop the queue on missing input or setup failure",
    )

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP submission API")
    serve_parser.add_argument("--port", type=int, help="Listen port")

    # FORMATS / CHECK
    subparsers.add_parser("formats", help="List formats and quality levels")
    subparsers.add_parser("check", help="Verify dependencies")

    args = parser.parse_args()

    if args.command == "formats":
        for name in available_formats():
            fmt = FORMATS[name]
            video = f"{fmt.video_codec}@{fmt.video_bitrate}k" if fmt.video_codec else "(audio only)"
            print(f"{name:<8} video={video:<20} audio={fmt.audio_codec}@{fmt.audio_bitrate}k")
        print(f"\nQuality levels: {', '.join(QUALITY_PRESETS)}")
        return

    if args.command == "check":
        print("Checking dependencies...")
        if check_ffmpeg():
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)
        return

    if args.command not in ("convert", "serve"):
        parser.print_help()
        return

    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict, config_path=Path(args.config) if args.config else None)
    configure_logging(config.logging.level)

    if args.command == "convert":
        sys.exit(run_convert(args, config))
    run_serve(config)


if __name__ == "__main__":
    main()
