#!/usr/bin/env python3
"""
Map tile server

Serves web-mercator tiles rendered from the imported calibrated maps,
plus their stored and reprojected images.

Usage:
    python src/map_server.py [config.json]

URLs:
    http://127.0.0.1:<port>/tile/<mapId>/<z>/<x>/<y>.png
    http://127.0.0.1:<port>/image/<mapId>
    http://127.0.0.1:<port>/reprojected/<mapId>.jpg
"""

import sys
import os

# Add src to path for imports
current_dir = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, current_dir)

from core.tile_engine_manager import TileEngineManager


def main():
    """
    Start the tile server in the foreground.

    The port comes from the config (server_port); 0 lets the OS pick a
    free one, which is logged on startup.
    """
    config_path = sys.argv[1] if len(sys.argv) > 1 else 'config.json'
    try:
        manager = TileEngineManager(config_path)
        try:
            manager.serve(None, None)
        finally:
            manager.close()

    except KeyboardInterrupt:
        print("\nServer stopped by user.")
    except Exception as e:
        print(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
