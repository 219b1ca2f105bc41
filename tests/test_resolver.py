from __future__ import annotations

import pytest
import pytest_asyncio

from core.errors import RetrievalError, TrackNotFoundError, UnsupportedSourceError
from helpers import ogg_stream
from systems.resolver import TrackResolver
from utils.library import ROOT_PLAYLIST_NAME, MusicLibrary


AUDIO = ogg_stream(2)


def _touch(path, data: bytes = AUDIO) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


@pytest.fixture
def music(tmp_path):
    _touch(tmp_path / "Jazz" / "b side.opus")
    _touch(tmp_path / "Jazz" / "A Train.ogg")
    _touch(tmp_path / "Jazz" / "notes.txt")
    _touch(tmp_path / "Rock" / "Thunder.opus")
    _touch(tmp_path / ".hidden" / "secret.opus")
    _touch(tmp_path / "loose.opus")
    return tmp_path


@pytest.mark.asyncio
async def test_scan_finds_playlists(music) -> None:
    library = MusicLibrary(music)

    playlists = await library.scan()

    assert list(playlists) == ["jazz", "rock"]
    assert [p.name for p in playlists["jazz"]] == ["A Train.ogg", "b side.opus"]
    assert library.get_playlist(" JAZZ ") == playlists["jazz"]
    assert library.get_playlist("loose") is None


@pytest.mark.asyncio
async def test_root_files_form_a_playlist_without_folders(tmp_path) -> None:
    _touch(tmp_path / "one.opus")
    library = MusicLibrary(tmp_path)

    playlists = await library.scan()

    assert library.get_playlist_names() == [ROOT_PLAYLIST_NAME]
    assert [p.name for p in playlists[ROOT_PLAYLIST_NAME]] == ["one.opus"]


@pytest.mark.asyncio
async def test_missing_music_path_is_empty(tmp_path) -> None:
    library = MusicLibrary(tmp_path / "nowhere")

    assert await library.scan() == {}
    assert list(library.files()) == []


@pytest_asyncio.fixture
async def resolver(music):
    library = MusicLibrary(music)
    await library.scan()
    return TrackResolver(library)


@pytest.mark.asyncio
async def test_playlist_query_expands_to_all_tracks(resolver) -> None:
    resolution = await resolver.resolve("Jazz")

    assert [t.title for t in resolution.tracks] == ["A Train", "b side"]
    assert resolution.failed == 0


@pytest.mark.asyncio
async def test_free_text_matches_filename(resolver, music) -> None:
    resolution = await resolver.resolve("thunder")

    (track,) = resolution.tracks
    assert track.title == "Thunder"
    assert track.locator == str(music / "Rock" / "Thunder.opus")


@pytest.mark.asyncio
async def test_unknown_query(resolver) -> None:
    with pytest.raises(TrackNotFoundError):
        await resolver.resolve("polka")
    with pytest.raises(TrackNotFoundError):
        await resolver.resolve("   ")


@pytest.mark.asyncio
async def test_other_schemes_are_unsupported(resolver) -> None:
    with pytest.raises(UnsupportedSourceError):
        await resolver.resolve("ftp://example.com/song.opus")


@pytest.mark.asyncio
async def test_links_need_an_http_session(resolver) -> None:
    with pytest.raises(RetrievalError):
        await resolver.resolve("https://example.com/song.opus")


@pytest.mark.asyncio
async def test_fetch_reads_the_file(resolver) -> None:
    (track,) = (await resolver.resolve("thunder")).tracks

    assert await resolver.fetch(track) == AUDIO


@pytest.mark.asyncio
async def test_fetch_of_vanished_file_fails(resolver, music) -> None:
    (track,) = (await resolver.resolve("thunder")).tracks
    (music / "Rock" / "Thunder.opus").unlink()

    with pytest.raises(RetrievalError):
        await resolver.fetch(track)


@pytest.mark.asyncio
async def test_playlist_skips_files_that_are_not_ogg(resolver, music) -> None:
    _touch(music / "Jazz" / "c broken.opus", b"ID3\x04" + bytes(60))
    await resolver.library.scan()

    resolution = await resolver.resolve("jazz")

    assert [t.title for t in resolution.tracks] == ["A Train", "b side"]
    assert resolution.failed == 1


@pytest.mark.asyncio
async def test_search_hit_that_is_not_ogg_is_refused(resolver, music) -> None:
    _touch(music / "Rock" / "Static.opus", b"")
    await resolver.library.scan()

    with pytest.raises(UnsupportedSourceError):
        await resolver.resolve("static")
