#!/usr/bin/env python3
"""
Map Tile Engine - Main Entry Point
Import calibrated maps, cache provider tiles and export regions from the command line
"""

import sys
import os

# Add src directory to Python path
current_dir = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, current_dir)

from core.tile_engine_manager import run_from_command_line
from exceptions.tile_engine_exceptions import TileEngineException


def main():
    """Main entry point for the tile engine command line"""
    try:
        sys.exit(run_from_command_line())

    except KeyboardInterrupt:
        print("\nInterrupted by user.")
        sys.exit(1)
    except TileEngineException as e:
        print(f"\nError: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"\nUnexpected error: {e}")
        print("Please check your configuration and try again.")
        sys.exit(1)


if __name__ == "__main__":
    main()
