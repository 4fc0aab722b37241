from dataclasses import dataclass, field
from typing import Dict, List


@dataclass
class TileProvider:
    """Data model for an online slippy-map tile provider"""
    name: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    subdomains: List[str] = field(default_factory=lambda: ['a', 'b', 'c'])

    def get_tile_url(self, zoom: int, x: int, y: int, subdomain: str = '') -> str:
        """Generate tile URL for given coordinates"""
        return build_tile_url(self.url, zoom, x, y, subdomain or (self.subdomains[0] if self.subdomains else ''))

    def get_headers(self) -> Dict[str, str]:
        """Get request headers"""
        return self.headers.copy()

    def get_name(self) -> str:
        """Get provider name"""
        return self.name


def build_tile_url(template: str, zoom: int, x: int, y: int, subdomain: str = '') -> str:
    """Fill a {s}/{z}/{x}/{y} URL template"""
    return (template
            .replace('{s}', subdomain)
            .replace('{z}', str(zoom))
            .replace('{x}', str(x))
            .replace('{y}', str(y)))
