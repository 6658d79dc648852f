#!/usr/bin/env python3
"""Render warning buffers and markers from the warning sheet onto a satellite map."""
from __future__ import annotations

import argparse
import html
import json
import math
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import folium
from pyproj import CRS, Transformer
from shapely.geometry import Point, Polygon, mapping

from warnmap.load_warning_records import CSV_URL, FETCH_TIMEOUT, Source, SourceLoadError, load_records

OUTPUT_DIR = Path(os.environ.get('WARNMAP_OUTPUT', Path.cwd() / 'warning_map'))
MAP_CENTER_LAT = float(os.environ.get('WARNMAP_CENTER_LAT', 14.1672))  # Los Baños default
MAP_CENTER_LNG = float(os.environ.get('WARNMAP_CENTER_LNG', 121.2464))
MAP_ZOOM = int(os.environ.get('WARNMAP_ZOOM', 10))

TILE_URL = 'https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/{z}/{y}/{x}'
TILE_ATTRIBUTION = (
    'Tiles &copy; Esri &mdash; Source: Esri, i-cubed, USDA, USGS, AEX, GeoEye, Getmapping, '
    'Aerogrid, IGN, IGP, UPR-EGP, and the GIS User Community'
)
TILE_MAX_ZOOM = 18

BUFFER_RADIUS_KM = 20.0
BUFFER_FILL_OPACITY = 0.3
BUFFER_WEIGHT = 2

WARNING_COLORS = {
    '1': '#FFFF00',  # yellow
    '2': '#FFA500',  # orange
    '3': '#FF0000',  # red
}
UNKNOWN_COLOR = '#808080'

IMAGE_ICON_SIZE = (32, 32)
IMAGE_ICON_ANCHOR = (16, 32)
IMAGE_POPUP_ANCHOR = (0, -30)
DOT_ICON_SIZE = (12, 12)
DOT_ICON_ANCHOR = (6, 6)

MAP_FILENAME = 'warning_map.html'
GEOJSON_FILENAME = 'warning_buffers.geojson'


class BufferGeometryError(ValueError):
    """The geodesic buffer came back degenerate."""


def _normalize_level(level) -> str:
    if level is None:
        return ''
    if isinstance(level, float):
        if math.isnan(level):
            return ''
        if level.is_integer():
            return str(int(level))
    return str(level).strip()


def warning_color(level) -> str:
    """Map a raw warning level to its severity color; unknown levels are grey."""
    return WARNING_COLORS.get(_normalize_level(level), UNKNOWN_COLOR)


def _parse_coordinate(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def geodesic_buffer(lng: float, lat: float, radius_km: float = BUFFER_RADIUS_KM) -> Polygon:
    """Circular buffer of ``radius_km`` around (lng, lat) on the WGS84 ellipsoid.

    The point is buffered in an azimuthal equidistant projection centred on
    itself, where distances from the centre are true geodesic distances, and
    the ring is projected back to lon/lat.
    """
    aeqd = CRS.from_proj4(f"+proj=aeqd +lat_0={lat} +lon_0={lng} +x_0=0 +y_0=0 +datum=WGS84 +units=m +no_defs")
    transformer = Transformer.from_crs(aeqd, 'EPSG:4326', always_xy=True)
    # The point sits at the origin of its own AEQD projection.
    ring = Point(0, 0).buffer(radius_km * 1000).exterior
    xs, ys = zip(*ring.coords)
    lngs, lats = transformer.transform(xs, ys)
    polygon = Polygon(list(zip(lngs, lats)))
    if polygon.is_empty:
        raise BufferGeometryError(f"Empty buffer around ({lng}, {lat})")
    if not all(math.isfinite(x) and math.isfinite(y) for x, y in polygon.exterior.coords):
        raise BufferGeometryError(f"Non-finite buffer coordinates around ({lng}, {lat})")
    return polygon


def popup_html(warning_level, lat: float, lng: float) -> str:
    return f"Warning Level: {warning_level}<br>Lat: {lat:.4f}, Lng: {lng:.4f}"


def _clean_icon_url(value) -> str:
    if not isinstance(value, str):
        return ''
    return value.strip()


def build_marker_icon(icon_url, color: str) -> Dict:
    icon_url = _clean_icon_url(icon_url)
    if icon_url:
        # Plain <img> markup: the browser resolves the URL, nothing is read locally.
        width, height = IMAGE_ICON_SIZE
        return {
            'kind': 'image',
            'icon_url': icon_url,
            'icon_size': IMAGE_ICON_SIZE,
            'icon_anchor': IMAGE_ICON_ANCHOR,
            'popup_anchor': IMAGE_POPUP_ANCHOR,
            'html': f'<img src="{html.escape(icon_url, quote=True)}" width="{width}" height="{height}" alt="">',
        }
    return {
        'kind': 'dot',
        'color': color,
        'icon_size': DOT_ICON_SIZE,
        'icon_anchor': DOT_ICON_ANCHOR,
        'popup_anchor': None,
        'html': (
            f'<div style="background-color: {color}; width: 10px; height: 10px; '
            'border-radius: 50%; border: 1px solid #333;"></div>'
        ),
    }


def _folium_icon(icon: Dict) -> folium.DivIcon:
    return folium.DivIcon(
        html=icon['html'],
        icon_size=icon['icon_size'],
        icon_anchor=icon['icon_anchor'],
        popup_anchor=icon['popup_anchor'],
        class_name='custom-div-icon',
    )


def buffer_style(color: str) -> Dict:
    return {
        'color': color,
        'fillColor': color,
        'fillOpacity': BUFFER_FILL_OPACITY,
        'weight': BUFFER_WEIGHT,
    }


class MapSession:
    """Satellite base map plus the warning features drawn on it.

    Features only accumulate; ``clear_features`` rebuilds the base map empty.
    """

    def __init__(
        self,
        center: Tuple[float, float] = (MAP_CENTER_LAT, MAP_CENTER_LNG),
        zoom: int = MAP_ZOOM,
        radius_km: float = BUFFER_RADIUS_KM,
    ):
        self.center = center
        self.zoom = zoom
        self.radius_km = radius_km
        self.buffers: List[Dict] = []
        self.markers: List[Dict] = []
        self.map = self._build_base_map()

    def _build_base_map(self) -> folium.Map:
        fmap = folium.Map(location=list(self.center), zoom_start=self.zoom, tiles=None, max_zoom=TILE_MAX_ZOOM)
        self.tile_layer = folium.TileLayer(
            tiles=TILE_URL,
            attr=TILE_ATTRIBUTION,
            name='Satellite (Esri World Imagery)',
            max_zoom=TILE_MAX_ZOOM,
        )
        self.tile_layer.add_to(fmap)
        return fmap

    def add_buffer(self, feature: Dict) -> folium.GeoJson:
        color = feature['properties']['color']
        layer = folium.GeoJson(feature, style_function=lambda _feature, color=color: buffer_style(color))
        layer.add_to(self.map)
        self.buffers.append(feature)
        return layer

    def add_marker(self, marker: Dict) -> folium.Marker:
        layer = folium.Marker(
            location=list(marker['location']),
            icon=_folium_icon(marker['icon']),
            popup=folium.Popup(marker['popup']),
        )
        layer.add_to(self.map)
        self.markers.append(marker)
        return layer

    def clear_features(self) -> None:
        self.buffers = []
        self.markers = []
        self.map = self._build_base_map()

    def save(self, path: Path) -> None:
        self.map.save(str(path))


def render_record(session: MapSession, record: Dict) -> Dict:
    """Validate one record and draw its buffer and marker.

    Never raises: failures come back as diagnostics on the row result.
    """
    row = record.get('row')
    raw = record.get('raw', record)
    result: Dict = {'row': row, 'skipped': False, 'buffer': None, 'marker': None, 'diagnostics': []}
    lat = _parse_coordinate(record.get('lat'))
    lng = _parse_coordinate(record.get('lng'))
    if lat is None or lng is None:
        result['skipped'] = True
        result['diagnostics'].append(f"Invalid coordinates for row {row}: {raw}")
        return result

    warning_level = record.get('warning_level')
    color = warning_color(warning_level)

    try:
        polygon = geodesic_buffer(lng, lat, session.radius_km)
        feature = {
            'type': 'Feature',
            'geometry': mapping(polygon),
            'properties': {'row': row, 'warning_level': warning_level, 'color': color},
        }
        session.add_buffer(feature)
    except Exception as exc:
        result['diagnostics'].append(f"Buffer error for row {row}: {exc!r} ({raw})")
    else:
        result['buffer'] = feature

    try:
        marker = {
            'row': row,
            'location': (lat, lng),
            'icon': build_marker_icon(record.get('icon_url'), color),
            'popup': popup_html(warning_level, lat, lng),
        }
        session.add_marker(marker)
    except Exception as exc:
        result['diagnostics'].append(f"Marker error for row {row}: {exc!r} ({raw})")
    else:
        result['marker'] = marker
    return result


def render_records(session: MapSession, records: Sequence[Dict]) -> Dict:
    summary: Dict = {
        'records': 0,
        'markers': 0,
        'buffers': 0,
        'skipped': 0,
        'buffer_failures': 0,
        'marker_failures': 0,
        'diagnostics': [],
        'features': [],
    }
    for record in records:
        result = render_record(session, record)
        summary['records'] += 1
        for message in result['diagnostics']:
            print(f"⚠️  {message}")
        summary['diagnostics'].extend(result['diagnostics'])
        if result['skipped']:
            summary['skipped'] += 1
            continue
        if result['marker'] is None:
            summary['marker_failures'] += 1
        else:
            summary['markers'] += 1
        if result['buffer'] is None:
            summary['buffer_failures'] += 1
        else:
            summary['buffers'] += 1
            summary['features'].append(result['buffer'])
    return summary


def run_pipeline(
    session: MapSession,
    source: Source = CSV_URL,
    replace: bool = False,
    timeout: float = FETCH_TIMEOUT,
) -> Dict:
    """Load the warning table and draw every row onto ``session``.

    Repeated runs add to the existing features unless ``replace`` is set.
    Raises ``SourceLoadError`` when the table cannot be loaded; the session is
    left untouched in that case.
    """
    records = load_records(source, timeout=timeout)
    if replace:
        session.clear_features()
    return render_records(session, records)


def _display_path(path: Path) -> Path:
    try:
        return path.relative_to(Path.cwd())
    except ValueError:
        return path


def write_map_html(session: MapSession, output_dir: Path = OUTPUT_DIR) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    html_path = output_dir / MAP_FILENAME
    session.save(html_path)
    print(f"✔️  Wrote {_display_path(html_path)}")
    return html_path


def write_buffers_geojson(summary: Dict, output_dir: Path = OUTPUT_DIR) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    geojson_path = output_dir / GEOJSON_FILENAME
    payload = {'type': 'FeatureCollection', 'features': summary['features']}
    geojson_path.write_text(json.dumps(payload), encoding='utf-8')
    print(f"✔️  Wrote {_display_path(geojson_path)}")
    return geojson_path


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Render warning buffers and markers onto a satellite map.')
    parser.add_argument('source', nargs='?', default=CSV_URL, help='CSV URL or local path (default: WARNMAP_CSV_URL)')
    parser.add_argument('--output', type=Path, default=OUTPUT_DIR, help='Output directory (default: WARNMAP_OUTPUT)')
    args = parser.parse_args(argv)

    session = MapSession()
    try:
        summary = run_pipeline(session, args.source)
    except SourceLoadError as exc:
        print(f"❌ Failed to load CSV data. {exc}", file=sys.stderr)
        return 1
    print(
        f"Rendered {summary['markers']} markers and {summary['buffers']} buffers "
        f"from {summary['records']} rows ({summary['skipped']} skipped)."
    )
    write_map_html(session, args.output)
    write_buffers_geojson(summary, args.output)
    return 0


if __name__ == '__main__':
    sys.exit(main())
