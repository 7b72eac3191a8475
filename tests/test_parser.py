"""Tests for incremental plist record parsing."""

import random
from datetime import timezone

import pytest

from records import build_record, build_record_data, encode_record
from socwatch.core.parser import (
    StreamParser,
    aggregate_cluster,
    decode_sample,
    freq_to_mhz,
    idle_to_util,
)
from socwatch.errors import MalformedRecord
from socwatch.models.enums import ThermalPressure
from socwatch.models.runtime import CoreUsage


def _feed_all(parser, chunks):
    results = []
    for chunk in chunks:
        results.extend(parser.feed(chunk))
    return results


def _samples(results):
    return [r.sample for r in results if r.ok]


def _errors(results):
    return [r.error for r in results if not r.ok]


class TestDecodeRecord:
    def test_fields(self, make_record):
        results = list(StreamParser().feed(make_record(cpu_mw=1000.0, gpu_mw=500.0)))
        assert len(results) == 1
        s = results[0].sample
        assert s.sequence == 1
        assert s.timestamp.tzinfo is timezone.utc
        assert s.cpu_power_mw == 1000.0
        assert s.gpu_power_mw == 500.0
        assert s.package_power_mw == 1500.0
        assert s.gpu_util == 25.0
        assert s.gpu_freq_mhz == 1398
        assert s.thermal_pressure == ThermalPressure.NOMINAL

    def test_cores_ordered_by_id(self, make_record):
        s = next(iter(StreamParser().feed(make_record()))).sample
        assert [c.core_id for c in s.cores] == [0, 1, 2, 3]
        assert [c.cluster for c in s.cores] == ["E", "E", "P", "P"]
        assert [c.util for c in s.cores] == [25.0, 75.0, 50.0, 0.0]

    def test_cluster_util_is_core_mean(self, make_record):
        s = next(iter(StreamParser().feed(make_record()))).sample
        assert s.e_cluster_util == 50.0
        assert s.p_cluster_util == 25.0
        assert s.e_cluster_freq_mhz == 972
        assert s.p_cluster_freq_mhz == 3204

    def test_power_uses_elapsed_time(self):
        data = build_record_data(cpu_mw=3000.0, elapsed_ns=2_000_000_000)
        s = decode_sample(data, sequence=1)
        assert s.cpu_power_mw == 1500.0

    def test_package_power_is_not_rescaled(self):
        # combined_power is already a rate; only the energy fields are divided
        data = build_record_data(cpu_mw=2000.0, gpu_mw=1000.0, package_mw=1500.0,
                                 elapsed_ns=2_000_000_000)
        s = decode_sample(data, sequence=1)
        assert s.cpu_power_mw == 1000.0
        assert s.gpu_power_mw == 500.0
        assert s.package_power_mw == 1500.0
        assert s.package_power_mw >= s.cpu_power_mw

    def test_power_falls_back_to_interval(self):
        data = build_record_data(cpu_mw=3000.0, elapsed_ns=None)
        s = decode_sample(data, sequence=1, interval=3.0)
        assert s.cpu_power_mw == 1000.0

    def test_ane_util_from_power(self):
        data = build_record_data(ane_mw=2000.0)
        s = decode_sample(data, sequence=1, ane_max_power_mw=8000.0)
        assert s.ane_util == 25.0

    def test_ane_util_clamped(self):
        data = build_record_data(ane_mw=20000.0)
        s = decode_sample(data, sequence=1, ane_max_power_mw=8000.0)
        assert s.ane_util == 100.0

    def test_unknown_keys_ignored(self):
        data = build_record_data()
        data["bandwidth_counters"] = [{"name": "x", "value": 1}]
        data["processor"]["extra"] = "whatever"
        assert decode_sample(data, sequence=1).cpu_power_mw == 1000.0

    def test_missing_thermal_pressure(self):
        data = build_record_data()
        del data["thermal_pressure"]
        assert decode_sample(data, sequence=1).thermal_pressure == ThermalPressure.UNKNOWN


class TestSchemaValidation:
    @pytest.mark.parametrize(
        "drop",
        [
            "timestamp",
            "processor",
            "gpu",
            "processor.cpu_energy",
            "processor.combined_power",
            "processor.clusters",
            "gpu.idle_ratio",
        ],
    )
    def test_missing_required_key(self, drop):
        results = list(StreamParser().feed(build_record(drop=(drop,))))
        assert len(results) == 1
        assert not results[0].ok
        assert isinstance(results[0].error, MalformedRecord)

    def test_non_numeric_value(self):
        data = build_record_data()
        data["processor"]["gpu_energy"] = "lots"
        with pytest.raises(MalformedRecord, match="gpu_energy"):
            decode_sample(data, sequence=1)

    def test_bool_is_not_numeric(self):
        data = build_record_data()
        data["gpu"]["idle_ratio"] = True
        with pytest.raises(MalformedRecord):
            decode_sample(data, sequence=1)

    def test_negative_power(self):
        data = build_record_data(cpu_mw=-5.0)
        with pytest.raises(MalformedRecord, match="negative"):
            decode_sample(data, sequence=1)

    def test_invalid_core_id(self):
        data = build_record_data()
        data["processor"]["clusters"][0]["cpus"][0]["cpu"] = "zero"
        with pytest.raises(MalformedRecord):
            decode_sample(data, sequence=1)

    def test_invalid_xml(self):
        parser = StreamParser()
        results = list(parser.feed(b"<?xml version='1.0'?><plist><dict><key>a</plist>"))
        assert len(results) == 1
        assert not results[0].ok


class TestStreamFraming:
    def test_back_to_back_records(self):
        stream = build_record(offset=0) + build_record(offset=1) + build_record(offset=2)
        results = list(StreamParser().feed(stream))
        assert [r.sample.sequence for r in results] == [1, 2, 3]

    def test_incomplete_record_waits(self, make_record):
        record = make_record()
        parser = StreamParser()
        assert list(parser.feed(record[:100])) == []
        assert parser.pending_bytes == 100
        results = list(parser.feed(record[100:]))
        assert len(results) == 1 and results[0].ok

    def test_noise_between_records_skipped(self):
        stream = b"\x00\x00garbage\n" + build_record(offset=0) + b"\x00junk" + build_record(offset=1)
        assert len(_samples(list(StreamParser().feed(stream)))) == 2

    def test_malformed_does_not_corrupt_next(self):
        stream = (
            build_record(offset=0)
            + build_record(offset=1, drop=("processor.cpu_energy",))
            + build_record(offset=2)
        )
        results = list(StreamParser().feed(stream))
        assert [r.ok for r in results] == [True, False, True]
        assert results[1].error.sequence == 2
        assert results[2].sample.sequence == 3

    def test_truncated_record_resyncs_on_next_start(self):
        stream = build_record(offset=0)[:300] + build_record(offset=1) + build_record(offset=2)
        whole = _feed_all(StreamParser(), [stream])
        bytewise = _feed_all(StreamParser(), [stream[i:i + 1] for i in range(len(stream))])
        assert [r.ok for r in whole] == [False, True, True]
        assert [r.ok for r in bytewise] == [False, True, True]
        assert "truncated" in str(whole[0].error)
        assert [s.sequence for s in _samples(whole)] == [2, 3]
        assert _samples(bytewise) == _samples(whole)

    def test_oversized_skip_stops_at_next_start(self):
        parser = StreamParser(max_record_bytes=8000)
        list(parser.feed(build_record(offset=0)[:300]))
        results = list(parser.feed(b"y" * 9000))
        assert [r.ok for r in results] == [False]
        results = list(parser.feed(build_record(offset=1)))
        assert [r.ok for r in results] == [True]

    def test_buffer_holds_only_incomplete_record(self):
        parser = StreamParser()
        record = build_record()
        for i in range(20):
            list(parser.feed(build_record(offset=i)))
        list(parser.feed(record[:50]))
        assert parser.pending_bytes == 50

    def test_noise_without_records_is_not_retained(self):
        parser = StreamParser()
        assert list(parser.feed(b"x" * 10_000)) == []
        assert parser.pending_bytes < 5

    def test_reset_discards_partial(self, make_record):
        parser = StreamParser()
        record = make_record()
        list(parser.feed(record[:200]))
        parser.reset()
        assert parser.pending_bytes == 0
        # The tail of the discarded record alone yields nothing
        assert list(parser.feed(record[200:])) == []
        assert len(list(parser.feed(make_record(offset=1)))) == 1

    def test_feed_is_lazy_but_buffers_eagerly(self, make_record):
        parser = StreamParser()
        parser.feed(make_record(offset=0))  # iterator discarded unconsumed
        assert parser.pending_bytes > 0
        results = list(parser.feed(b""))
        assert len(results) == 1 and results[0].ok


class TestChunkBoundaryIndependence:
    @pytest.fixture
    def stream(self):
        return b"".join(
            [
                build_record(offset=0, cpu_mw=1000.0),
                b"noise",
                build_record(offset=1, drop=("gpu.freq_hz",)),
                build_record(offset=2, cpu_mw=2000.0),
                build_record(offset=3, cpu_mw=3000.0),
            ]
        )

    def test_byte_at_a_time_matches_whole(self, stream):
        whole = _feed_all(StreamParser(), [stream])
        bytewise = _feed_all(StreamParser(), [stream[i:i + 1] for i in range(len(stream))])
        assert _samples(bytewise) == _samples(whole)
        assert len(_errors(bytewise)) == len(_errors(whole)) == 1
        assert len(_samples(whole)) == 3

    def test_random_splits_match_whole(self, stream):
        whole = _samples(_feed_all(StreamParser(), [stream]))
        rng = random.Random(7)
        for _ in range(10):
            cuts = sorted(rng.sample(range(1, len(stream)), 25))
            bounds = [0, *cuts, len(stream)]
            chunks = [stream[a:b] for a, b in zip(bounds, bounds[1:])]
            assert _samples(_feed_all(StreamParser(), chunks)) == whole

    def test_oversized_record_independent_of_chunking(self):
        big = build_record_data(offset=1)
        big["padding"] = "x" * 10_000
        stream = build_record(offset=0) + encode_record(big) + build_record(offset=2)

        whole = _feed_all(StreamParser(max_record_bytes=6000), [stream])
        bytewise = _feed_all(
            StreamParser(max_record_bytes=6000),
            [stream[i:i + 1] for i in range(len(stream))],
        )
        assert [r.ok for r in whole] == [True, False, True]
        assert [r.ok for r in bytewise] == [True, False, True]
        assert _samples(bytewise) == _samples(whole)

    def test_oversized_buffer_is_bounded(self):
        parser = StreamParser(max_record_bytes=2000)
        list(parser.feed(b"<?xml"))
        results = list(parser.feed(b"y" * 5000))
        assert len(results) == 1 and not results[0].ok
        assert parser.pending_bytes < 2000


class TestConversions:
    def test_idle_to_util(self):
        assert idle_to_util(0.25) == 75.0
        assert idle_to_util(0.0) == 100.0
        assert idle_to_util(1.0) == 0.0

    def test_idle_ratio_as_percentage(self):
        assert idle_to_util(75.0) == 25.0

    def test_idle_ratio_clamped(self):
        assert idle_to_util(-0.5) == 100.0
        assert idle_to_util(float("nan")) == 0.0

    def test_freq_to_mhz(self):
        assert freq_to_mhz(3_204_000_000.0) == 3204
        assert freq_to_mhz(1200.0) == 1200
        assert freq_to_mhz(0.0) == 0
        assert freq_to_mhz(float("inf")) == 0

    def test_aggregate_cluster_without_cores(self):
        rows = [("P0-Cluster", 40.0, 3000), ("P1-Cluster", 60.0, 3200)]
        assert aggregate_cluster(rows, [], "P") == (50.0, 3200)

    def test_aggregate_cluster_prefers_primary_freq(self):
        rows = [("E-Cluster", 10.0, 972)]
        cores = [CoreUsage(core_id=0, cluster="E", util=30.0, freq_mhz=2000)]
        assert aggregate_cluster(rows, cores, "E") == (30.0, 972)

    def test_aggregate_cluster_empty(self):
        assert aggregate_cluster([], [], "E") == (0.0, 0)
