"""Command-line interface for vodstream."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, Iterable, Optional

import click

from .downloader import SegmentDownloader
from .errors import PlaybackError, VodStreamError
from .manifest import ManifestLoader
from .models import ManifestFormat, RefreshPolicy, SelectionConstraints, StreamConfig
from .session import PlaybackSession


def _parse_pairs(entries: Iterable[str], separator: str, label: str) -> Dict[str, str]:
    pairs: Dict[str, str] = {}
    for entry in entries:
        if separator not in entry:
            raise click.BadParameter(f"{label} entries must be in the form A{separator}B")
        name, value = entry.split(separator, 1)
        pairs[name.strip()] = value.strip()
    return pairs


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _format_option(value: Optional[str]) -> Optional[ManifestFormat]:
    return ManifestFormat(value) if value else None


@click.group()
def cli():
    """Adaptive-streaming playback client."""
    pass


@cli.command()
@click.argument("url")
@click.option("--format", "manifest_format", type=click.Choice(["hls", "dash"]), help="Manifest format (sniffed by default)")
@click.option("--header", multiple=True, help="Additional HTTP header as Name:Value")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def variants(url, manifest_format, header, verbose):
    """List the variants of a manifest."""
    _configure_logging(verbose)
    headers = _parse_pairs(header, ":", "Header")

    async def _run():
        async with SegmentDownloader(headers=headers) as client:
            manifest = await ManifestLoader(client, _format_option(manifest_format)).load(url)

        click.echo(f"Format: {manifest.format.value}")
        click.echo(f"Type: {manifest.stream_type.value}")
        if manifest.duration is not None:
            click.echo(f"Duration: {manifest.duration:.3f}s")
        click.echo(f"Found {len(manifest.variants)} variant(s):")
        click.echo()
        for variant in manifest.variants:
            click.echo(f"Variant: {variant.id} ({variant.content_type})")
            click.echo(f"  Bandwidth: {variant.bandwidth} bps")
            if variant.resolution:
                width, height = variant.resolution
                click.echo(f"  Resolution: {width}x{height}")
            if variant.codecs:
                click.echo(f"  Codecs: {variant.codecs}")
            if variant.language:
                click.echo(f"  Language: {variant.language}")
            if variant.segments is not None:
                click.echo(f"  Segments: {len(variant.segments)}")
            if variant.key is not None and variant.key.is_encrypted:
                click.echo(f"  Encryption: {variant.key.method}")
        for track in manifest.subtitle_tracks:
            click.echo(f"Subtitles: {track.language or '?'} {track.name or ''}".rstrip())

    try:
        asyncio.run(_run())
    except VodStreamError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("url")
@click.option("-o", "--output", required=True, type=click.Path(dir_okay=False, path_type=Path), help="File to write decrypted media to")
@click.option("--format", "manifest_format", type=click.Choice(["hls", "dash"]), help="Manifest format (sniffed by default)")
@click.option("--max-width", type=int, help="Maximum video width")
@click.option("--max-height", type=int, help="Maximum video height")
@click.option("--max-bandwidth", type=int, help="Maximum bandwidth in bits per second")
@click.option("--audio-lang", help="Preferred audio language")
@click.option("--subtitle-lang", help="Preferred subtitle language")
@click.option("--strict", is_flag=True, help="Abort instead of relaxing unsatisfiable constraints")
@click.option("--prefetch", type=int, default=3, show_default=True, help="Segments fetched ahead")
@click.option("--retries", type=int, default=3, show_default=True, help="Retries per segment")
@click.option("--resume-after", type=int, help="Append to OUTPUT, continuing after this segment sequence number")
@click.option("--poll-interval", type=float, help="Seconds between live manifest refreshes")
@click.option("--max-idle-refreshes", type=int, help="End a live stream after this many refreshes without new segments")
@click.option(
    "--key",
    "key_map",
    multiple=True,
    help="CENC key as KID:KEY (hex). Repeat for multiple entries.",
)
@click.option("--mp4decrypt-path", help="Path to the mp4decrypt executable")
@click.option("--header", multiple=True, help="Additional HTTP header as Name:Value")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def download(
    url,
    output,
    manifest_format,
    max_width,
    max_height,
    max_bandwidth,
    audio_lang,
    subtitle_lang,
    strict,
    prefetch,
    retries,
    resume_after,
    poll_interval,
    max_idle_refreshes,
    key_map,
    mp4decrypt_path,
    header,
    verbose,
):
    """Write the decrypted stream of URL to a file."""
    _configure_logging(verbose)

    keys = _parse_pairs(key_map, ":", "--key")
    for kid, key in keys.items():
        try:
            valid = len(bytes.fromhex(key)) in (16, 32)
        except ValueError:
            valid = False
        if not valid:
            raise click.BadParameter(f"key for KID {kid} must be 16 or 32 bytes of hex")

    refresh = RefreshPolicy(max_idle_refreshes=max_idle_refreshes)
    if poll_interval is not None:
        refresh.interval = poll_interval

    config = StreamConfig(
        manifest_url=url,
        format_hint=_format_option(manifest_format),
        constraints=SelectionConstraints(
            max_width=max_width,
            max_height=max_height,
            max_bandwidth=max_bandwidth,
            audio_language=audio_lang,
            subtitle_language=subtitle_lang,
        ),
        strict_selection=strict,
        prefetch_window=prefetch,
        max_retries=retries,
        resume_after=resume_after,
        include_init=resume_after is None,
        refresh=refresh,
        headers=_parse_pairs(header, ":", "Header") or None,
        key_map=keys or None,
        mp4decrypt_path=mp4decrypt_path,
    )

    async def _run():
        written = 0
        async with PlaybackSession(config) as session:
            selection = await session.open()
            variant = selection.variant
            click.echo(f"Variant: {variant.id} ({variant.bandwidth} bps)")
            if selection.subtitle_track is not None:
                click.echo(f"Subtitles: {selection.subtitle_track.uri or selection.subtitle_track.name}")
            if selection.relaxed:
                click.echo(f"Warning: {selection.advisory}", err=True)

            output.parent.mkdir(parents=True, exist_ok=True)
            with output.open("wb" if resume_after is None else "ab") as handle:
                async for chunk in session.chunks():
                    handle.write(chunk.data)
                    written += len(chunk.data)
        click.echo(f"Wrote {written} bytes to {output}")

    try:
        asyncio.run(_run())
    except PlaybackError as exc:
        click.echo(f"Error: {exc}", err=True)
        if exc.last_delivered is not None:
            click.echo(f"Last delivered segment: {exc.last_delivered}", err=True)
            click.echo(f"Resume with: --resume-after {exc.last_delivered}", err=True)
        sys.exit(1)
    except VodStreamError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
