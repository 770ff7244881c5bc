"""Command-line interface for MVSRefine."""

import argparse
import logging
import sys
from pathlib import Path

from mvsrefine.config import RefinePipelineConfig


def _configure_logging(verbose: bool) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    # Silence noisy third-party loggers
    for name in ("matplotlib", "PIL"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _load_config(config_path: Path) -> RefinePipelineConfig:
    if not config_path.exists():
        print(f"Error: Config file not found: {config_path}", file=sys.stderr)
        sys.exit(1)

    try:
        return RefinePipelineConfig.from_yaml(config_path)
    except Exception as e:
        print(f"Error: Failed to load config: {e}", file=sys.stderr)
        sys.exit(1)


def init_config(
    config_path: Path,
    scene_path: str = "",
    depth_map_dir: str = "",
    output_dir: str = "",
    force: bool = False,
) -> RefinePipelineConfig:
    """Write a configuration YAML with every default spelled out.

    Args:
        config_path: Path of the YAML file to write.
        scene_path: Scene JSON path stored in the config.
        depth_map_dir: Coarse depth map directory stored in the config.
        output_dir: Output directory stored in the config.
        force: Overwrite an existing file.

    Returns:
        The generated configuration.

    Raises:
        SystemExit: If the file exists and ``force`` is False.
    """
    if config_path.exists() and not force:
        print(
            f"Error: Config file already exists: {config_path} (use --force to overwrite)",
            file=sys.stderr,
        )
        sys.exit(1)

    config = RefinePipelineConfig(
        scene_path=scene_path,
        depth_map_dir=depth_map_dir,
        output_dir=output_dir,
    )
    config.to_yaml(config_path)
    print(f"[OK] Configuration saved to: {config_path}")
    return config


def run_command(
    config_path: Path, verbose: bool = False, device: str | None = None
) -> None:
    """Refine every view of the configured scene.

    Args:
        config_path: Path to the pipeline config YAML file.
        verbose: If True, set logging to DEBUG level.
        device: Optional device override (replaces config.runtime.device).
    """
    _configure_logging(verbose)
    config = _load_config(config_path)

    if device is not None:
        try:
            config.runtime = config.runtime.model_validate(
                {**config.runtime.model_dump(), "device": device}
            )
        except ValueError as e:
            print(f"Error: Invalid device override: {e}", file=sys.stderr)
            sys.exit(1)

    for name, value in (
        ("scene_path", config.scene_path),
        ("depth_map_dir", config.depth_map_dir),
        ("output_dir", config.output_dir),
    ):
        if not value:
            print(f"Error: {name} is not set in {config_path}", file=sys.stderr)
            sys.exit(1)

    from mvsrefine.runner import run_refinement

    outputs = run_refinement(config)
    print(f"[OK] Refined {len(outputs)} view(s) into {config.output_dir}")


def memory_command(config_path: Path) -> None:
    """Print the device memory the refine buffers need for a configuration.

    Allocates the buffers on the configured device, so the report reflects
    the allocator's padded sizes.

    Args:
        config_path: Path to the pipeline config YAML file.
    """
    config = _load_config(config_path)

    from mvsrefine.buffers import BufferAllocationError, RefineBuffers, format_memory_report

    try:
        buffers = RefineBuffers(
            config.tiles,
            config.refine,
            device=config.runtime.device,
            pitch_alignment=config.runtime.pitch_alignment,
        )
    except BufferAllocationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(
        f"Max tile: {buffers.max_tile_width}x{buffers.max_tile_height}, "
        f"{config.refine.nb_depths} depths, device {config.runtime.device}"
    )
    print(format_memory_report(buffers))


def main() -> None:
    """Main entry point for the MVSRefine CLI."""
    parser = argparse.ArgumentParser(
        prog="mvsrefine",
        description="Multi-view stereo depth map refinement.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init subcommand
    init_parser = subparsers.add_parser(
        "init",
        help="Write a default config YAML",
    )
    init_parser.add_argument(
        "config",
        type=Path,
        help="Path to output config YAML file",
    )
    init_parser.add_argument(
        "--scene",
        type=str,
        default="",
        help="Path to the scene JSON file",
    )
    init_parser.add_argument(
        "--depth-map-dir",
        type=str,
        default="",
        help="Directory holding coarse {view_id}.npz depth maps",
    )
    init_parser.add_argument(
        "--output-dir",
        type=str,
        default="",
        help="Output directory for refined depth maps",
    )
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # run subcommand
    run_parser = subparsers.add_parser(
        "run",
        help="Refine the depth maps of a scene",
    )
    run_parser.add_argument(
        "config",
        type=Path,
        help="Path to pipeline config YAML file",
    )
    run_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    run_parser.add_argument(
        "--device",
        type=str,
        default=None,
        help="Override device (e.g., 'cpu' or 'cuda')",
    )

    # memory subcommand
    memory_parser = subparsers.add_parser(
        "memory",
        help="Report the device memory of the refine buffers",
    )
    memory_parser.add_argument(
        "config",
        type=Path,
        help="Path to pipeline config YAML file",
    )

    args = parser.parse_args()

    # Dispatch
    if args.command == "init":
        init_config(
            config_path=args.config,
            scene_path=args.scene,
            depth_map_dir=args.depth_map_dir,
            output_dir=args.output_dir,
            force=args.force,
        )
    elif args.command == "run":
        run_command(
            config_path=args.config,
            verbose=args.verbose,
            device=args.device,
        )
    elif args.command == "memory":
        memory_command(config_path=args.config)
    else:
        parser.print_help()
        sys.exit(1)
