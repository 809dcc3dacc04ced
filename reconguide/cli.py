# reconguide/cli.py

import argparse
import logging
import os
import sys

import yaml

from reconguide.geometry.mesh_loader import LoadError
from reconguide.geometry.spatial_index import EmptyGeometry
from reconguide.pipeline.run_full_pipeline import run_full_pipeline

CONFIG_PATH = os.path.join("config", "settings.yaml")


def load_config(path=CONFIG_PATH):
    """Settings from the YAML file, or an empty dict (all defaults) when it is absent."""
    if not os.path.isfile(path):
        return {}
    with open(path) as f:
        config = yaml.safe_load(f)
    return config or {}


def setup_logging(config):
    handlers = [logging.StreamHandler(sys.stderr)]
    if config.get("logging_file"):
        log_dir = os.path.dirname(config["logging_file"])
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(config["logging_file"], mode="w", encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, str(config.get("logging_level", "INFO")).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
        force=True,
    )


def build_parser():
    parser = argparse.ArgumentParser(
        prog="reconguide",
        description="Score candidate viewpoints around a proxy model by expected "
                    "multi-view reconstructability.",
    )
    parser.add_argument("proxy_mesh", help="proxy triangle mesh (ray-intersection geometry)")
    parser.add_argument("proxy_cloud", help="dense proxy point cloud with normals")
    parser.add_argument("sphere", help="candidate-viewpoint sphere mesh to score")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        config = load_config()
    except (OSError, yaml.YAMLError) as exc:
        print(f"reconguide: {CONFIG_PATH}: {exc}", file=sys.stderr)
        return 1

    try:
        setup_logging(config)
    except OSError as exc:
        print(f"reconguide: {config.get('logging_file')}: {exc}", file=sys.stderr)
        return 1
    logging.info("Starting pipeline...")

    try:
        run_full_pipeline(config, args.proxy_mesh, args.proxy_cloud, args.sphere)
    except (LoadError, EmptyGeometry) as exc:
        logging.error(f"{exc}")
        return 1
    except ValueError as exc:
        logging.error(f"{CONFIG_PATH}: {exc}")
        return 1
    except OSError as exc:
        logging.error(f"Cannot write outputs: {exc}")
        return 1

    logging.info("Pipeline finished.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
