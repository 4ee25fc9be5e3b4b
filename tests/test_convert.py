"""End-to-end tests for converter/convert.py with a SQLite store and a fake grib_get_data."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from config import ConfigError, ConverterConfig
from conftest import CATALOG, decoder_output, write_archive
from convert import Converter, build_parser, conversion_interval, main, parse_model_run
from lock import single_instance
from models import FileRecord, FileValidity
from parameters import Parameter
from store import weather_table

MR = datetime(2018, 9, 5, 12, tzinfo=timezone.utc)


@pytest.fixture
def config(downloads, fake_decoder):
    return ConverterConfig(
        directory=downloads,
        timesteps=1,
        decoder_path=fake_decoder,
        delete_downloaded_files=True,
        min_latitude=49.0, max_latitude=51.0, min_longitude=6.0, max_longitude=8.0,
        shutdown_grace_seconds=1.0,
    )


def _downloaded(store, directory, model_run, timestep, parameter, text):
    record = FileRecord(model_run, timestep, parameter, sufficient_size=True,
                        download_date=model_run + timedelta(hours=3))
    write_archive(directory, record, text)
    store.persist_file(record)
    return record


def _rows(store):
    with store.engine.connect() as conn:
        return conn.execute(select(weather_table).order_by(weather_table.c.coordinate_id)).mappings().all()


def test_convert_one_timestep(config, store, coordinates):
    z0 = _downloaded(store, config.directory, MR, 0, Parameter.Z0,
                     decoder_output({c: 0.1063 for c in CATALOG}))
    # one of four coordinates missing: 25% < 33%
    t2m = _downloaded(store, config.directory, MR, 0, Parameter.T_2M,
                      decoder_output({c: 281.0 for c in CATALOG[:3]}))

    converter = Converter(config, store)
    converter.convert()
    converter.shutdown()

    rows = _rows(store)
    assert len(rows) == len(coordinates)
    assert all(r["z0"] == 0.1063 for r in rows)
    assert [r["t_2m"] for r in rows] == [281.0, 281.0, 281.0, None]
    assert all(r["datum"] == datetime(2018, 9, 5, 12) for r in rows)

    store.renew_session()
    for record in (z0, t2m):
        stored = store.find_file(record.name)
        assert stored.persisted
        assert stored.validity is FileValidity.VALID
        assert stored.archive_deleted
        assert stored.decoded_file_deleted
        assert not stored.decompressed
        assert not os.path.exists(record.archive_path(config.directory))
        assert not os.path.exists(record.decoded_path(config.directory))
    assert store.find_file(t2m.name).missing_coordinates == 1
    assert converter.tracker.counters["persisted"] == 2
    assert store.oldest_model_run_with_unprocessed_files() is None


def test_overlapping_model_runs_are_interpolated(config, store, coordinates):
    config = ConverterConfig(**{**config.__dict__, "timesteps": 4})
    _downloaded(store, config.directory, MR, 3, Parameter.Z0, decoder_output({c: 0.1063 for c in CATALOG}))
    later = MR + timedelta(hours=3)
    _downloaded(store, config.directory, later, 0, Parameter.Z0, decoder_output({c: 0.0001 for c in CATALOG}))

    converter = Converter(config, store)
    converter.convert()
    converter.shutdown()

    rows = _rows(store)
    assert len(rows) == len(coordinates)
    for row in rows:
        assert row["datum"] == datetime(2018, 9, 5, 15)
        assert row["z0"] == pytest.approx(0.03517, abs=1e-4)
        assert row["z0"] == pytest.approx(0.1063 * 0.33 + 0.0001 * 0.67)


def test_unusable_file_is_invalid_and_contributes_nothing(config, store, coordinates):
    _downloaded(store, config.directory, MR, 0, Parameter.Z0, decoder_output({c: 0.5 for c in CATALOG}))
    bad = _downloaded(store, config.directory, MR, 0, Parameter.T_2M, "Latitude Longitude Value\n")

    converter = Converter(config, store)
    converter.convert()
    converter.shutdown()

    rows = _rows(store)
    assert all(r["z0"] == 0.5 for r in rows)
    assert all(r["t_2m"] is None for r in rows)
    store.renew_session()
    stored = store.find_file(bad.name)
    assert stored.validity is FileValidity.INVALID
    assert not stored.persisted
    assert stored.missing_coordinates == len(coordinates)
    assert stored.decoded_file_deleted


def test_too_many_missing_coordinates_stay_unpersisted(config, store, coordinates):
    sparse = _downloaded(store, config.directory, MR, 0, Parameter.Z0,
                         decoder_output({CATALOG[0]: 0.5, CATALOG[1]: 0.5}))

    converter = Converter(config, store)
    converter.convert()
    converter.shutdown()

    store.renew_session()
    stored = store.find_file(sparse.name)
    assert not stored.persisted
    assert stored.validity is FileValidity.VALID
    # archive is gone, the decoded file stays for a retry
    assert os.path.exists(sparse.decoded_path(config.directory))
    assert len(_rows(store)) == len(coordinates)


def test_timestep_without_new_values_is_skipped(config, store, coordinates):
    _downloaded(store, config.directory, MR, 0, Parameter.Z0,
                decoder_output({c: None for c in CATALOG}))

    converter = Converter(config, store)
    converter.convert()
    converter.shutdown()

    assert _rows(store) == []


def test_missing_archive_is_flagged(config, store, coordinates):
    record = FileRecord(MR, 0, Parameter.Z0, sufficient_size=True)
    store.persist_file(record)

    converter = Converter(config, store)
    converter.convert()
    converter.shutdown()

    store.renew_session()
    stored = store.find_file(record.name)
    assert stored.archive_deleted
    assert not stored.decompressed
    assert _rows(store) == []


def test_explicit_interval(config, store, coordinates):
    _downloaded(store, config.directory, MR, 0, Parameter.Z0, decoder_output({c: 1.0 for c in CATALOG}))
    outside = _downloaded(store, config.directory, MR + timedelta(hours=3), 0, Parameter.Z0,
                          decoder_output({c: 2.0 for c in CATALOG}))

    converter = Converter(config, store)
    converter.convert(MR, MR)
    converter.shutdown()

    store.renew_session()
    assert not store.find_file(outside.name).persisted
    assert {r["z0"] for r in _rows(store)} == {1.0}


def test_run_exits_quietly_when_locked(config, store, coordinates):
    _downloaded(store, config.directory, MR, 0, Parameter.Z0, decoder_output({c: 1.0 for c in CATALOG}))
    with single_instance("converter", config.directory):
        assert Converter(config, store).run() == 0
    assert _rows(store) == []


def test_run_converts_under_lock(config, store, coordinates):
    _downloaded(store, config.directory, MR, 0, Parameter.Z0, decoder_output({c: 1.0 for c in CATALOG}))
    assert Converter(config, store).run() == 0
    assert len(_rows(store)) == len(coordinates)
    assert not os.path.exists(os.path.join(os.path.dirname(config.directory), "converter.lock"))


def test_run_fails_without_database(config, tmp_path):
    from store import Store
    unreachable = Store(f"sqlite:///{tmp_path / 'missing' / 'icon.db'}")
    assert Converter(config, unreachable).run() == 1


# ── CLI ──────────────────────────────────────────────────────────────────────

def test_parse_model_run():
    assert parse_model_run("2018090512") == MR
    with pytest.raises(ConfigError):
        parse_model_run("05.09.2018")


def test_conversion_interval():
    assert conversion_interval(None, None) == (None, None)
    assert conversion_interval("2018090512", "2018090600") == (MR, datetime(2018, 9, 6, tzinfo=timezone.utc))
    with pytest.raises(ConfigError):
        conversion_interval("2018090512", None)
    with pytest.raises(ConfigError):
        conversion_interval("2018090600", "2018090512")


def test_parser_leaves_unset_flags_empty():
    args = build_parser().parse_args(["convert", "--from", "2018090512", "--until", "2018090512"])
    assert args.command == "convert"
    assert args.delete_downloaded_files is None
    assert args.timesteps is None
    assert args.start == "2018090512"


def test_main_rejects_single_bound(tmp_path):
    assert main(["--config", str(tmp_path / "none.yaml"), "convert", "--from", "2018090512"]) == 2


def test_main_converts(tmp_path, store, coordinates, fake_decoder):
    downloads = tmp_path / "work" / "downloads"
    downloads.mkdir(parents=True)
    _downloaded(store, str(downloads), MR, 0, Parameter.Z0, decoder_output({c: 1.0 for c in CATALOG}))

    code = main([
        "--config", str(tmp_path / "none.yaml"),
        "--directory", str(downloads),
        "--timesteps", "1",
        "--decoder", os.path.dirname(fake_decoder),
        "--database-url", store.url,
        "convert",
    ])

    assert code == 0
    assert len(_rows(store)) == len(coordinates)
