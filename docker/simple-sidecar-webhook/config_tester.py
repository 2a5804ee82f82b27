#!/usr/bin/python3
"""Load a sidecar configuration file and print it back in normalised form."""
import argparse
import sys

from sidecar_config import ConfigError, dump_config, load_config


def main(argv=None):
    parser = argparse.ArgumentParser(description='Simple Sidecar configuration tester')
    parser.add_argument("config_file", help="Path to the sidecar configuration YAML")
    args = parser.parse_args(argv)

    try:
        registry = load_config(args.config_file)
    except ConfigError as e:
        print(e, file=sys.stderr)
        return 1

    print(dump_config(registry))
    return 0


if __name__ == "__main__":
    sys.exit(main())
