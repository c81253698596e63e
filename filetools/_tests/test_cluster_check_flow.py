import os

import pytest

from filetools.config import FileToolsConfig
from filetools.errors import JobNameError
from filetools.failure import FailureReason
from filetools.flows.cluster_check import RunSummary, cluster_check_flow

from .conftest import CLUSTER, OLD, mu2e_name, write_job


@pytest.fixture
def dst_root(tmp_path):
    return str(tmp_path / "workflow")


def make_config(dst_root, **values):
    cluster_check = {"dst_root": dst_root, "min_age_seconds": 3600}
    cluster_check.update(values)
    return FileToolsConfig(config={"cluster_check": cluster_check})


def tree(root):
    """All directories below root, relative to it."""
    found = []
    for dirpath, dirnames, _ in os.walk(root):
        for dirname in dirnames:
            found.append(os.path.relpath(os.path.join(dirpath, dirname), root))
    return sorted(found)


def test_check_and_move(cluster_dir, dst_root):
    write_job(cluster_dir, name="00001", sequencer="001000_00000001")
    write_job(cluster_dir, name="00002", sequencer="001000_00000002", grid_status=1)
    write_job(cluster_dir, name="00826.0144a733", sequencer="001000_00000826")
    truncated = write_job(cluster_dir, shard="01", name="00100", sequencer="001000_00000100")
    data = os.path.join(truncated.path, mu2e_name("dig", "001000_00000100", "art"))
    with open(data, "r+b") as f:
        f.truncate(10)
    os.utime(truncated.path, (0, 0))
    recent = write_job(cluster_dir, shard="01", name="00101", sequencer="001000_00000101")
    os.utime(recent.path, None)

    summary = cluster_check_flow.fn([str(cluster_dir)], config=make_config(dst_root))

    assert summary.total == 4
    assert summary.num_good == 2
    assert summary.counts[FailureReason.EXIT_STATUS] == 1
    assert summary.counts[FailureReason.DATA_SIZE] == 1
    assert summary.skipped_recent == 1

    assert os.path.isdir(os.path.join(dst_root, "good", CLUSTER, "00", "00001"))
    assert os.path.isdir(os.path.join(dst_root, "good", CLUSTER, "00", "00826"))
    assert os.path.isdir(os.path.join(dst_root, "failed", "exitstatus", CLUSTER, "00", "00002"))
    assert os.path.isdir(os.path.join(dst_root, "failed", "datasize", CLUSTER, "01", "00100"))
    assert os.listdir(str(cluster_dir / "00")) == []
    assert os.listdir(str(cluster_dir / "01")) == ["00101"]


def test_rerun_is_idempotent(cluster_dir, dst_root):
    write_job(cluster_dir, name="00001", sequencer="001000_00000001")
    write_job(cluster_dir, name="00002", sequencer="001000_00000002", art_status=1)
    config = make_config(dst_root)

    cluster_check_flow.fn([str(cluster_dir)], config=config)
    before = tree(dst_root)
    summary = cluster_check_flow.fn([str(cluster_dir)], config=config)

    assert summary.total == 0
    assert tree(dst_root) == before


def test_bad_job_name_is_fatal(cluster_dir, dst_root):
    write_job(cluster_dir, name="0082")
    with pytest.raises(JobNameError):
        cluster_check_flow.fn([str(cluster_dir)], config=make_config(dst_root))


def test_grid_duplicate_in_same_cluster(cluster_dir, dst_root):
    write_job(cluster_dir, name="00017", host="node-a")
    write_job(cluster_dir, name="00017.3f2a", host="node-b")

    summary = cluster_check_flow.fn([str(cluster_dir)], config=make_config(dst_root))

    assert summary.num_good == 1
    assert summary.counts[FailureReason.GRID_DUPLICATE] == 1
    assert os.path.isdir(os.path.join(dst_root, "failed", "gridduplicate", CLUSTER, "00", "00017.3f2a"))


def test_resubmission_duplicate(tmp_path, dst_root, samweb, fake_catalog):
    first = tmp_path / "clusters" / "85432172"
    second = tmp_path / "clusters" / "85439999"
    write_job(first, host="node-a")
    write_job(second, host="node-b")
    config = make_config(dst_root, duplicate_detection="two-tier")

    summary = cluster_check_flow.fn([str(first), str(second)], config=config, client=samweb)

    assert summary.num_good == 1
    assert summary.counts[FailureReason.RESUBMISSION_DUPLICATE] == 1
    assert os.path.isdir(os.path.join(dst_root, "good", "85432172", "00", "00017"))
    assert os.path.isdir(os.path.join(dst_root, "failed", "resubmissionduplicate", "85439999", "00", "00017"))
    assert len(fake_catalog.files) == 1
    assert summary.catalog_seconds == samweb.elapsed


def test_same_sequencer_from_different_fcl_files(tmp_path, dst_root, samweb, fake_catalog):
    first = tmp_path / "clusters" / "85432172"
    second = tmp_path / "clusters" / "85439999"
    write_job(first, host="node-a", parent="cnf.mu2e.CeEndpoint.MDC2020a.001000_00000017.fcl")
    write_job(second, host="node-b", parent="cnf.mu2e.CeEndpointMix.MDC2020b.001000_00000017.fcl")
    config = make_config(dst_root, duplicate_detection="two-tier")

    summary = cluster_check_flow.fn([str(first), str(second)], config=config, client=samweb)

    assert summary.num_good == 2
    assert os.path.isdir(os.path.join(dst_root, "good", "85432172", "00", "00017"))
    assert os.path.isdir(os.path.join(dst_root, "good", "85439999", "00", "00017"))
    assert len(fake_catalog.files) == 2


def test_log_without_mu2e_name_does_not_stop_the_run(cluster_dir, dst_root, samweb, fake_catalog):
    odd = write_job(cluster_dir, name="00001", sequencer="001000_00000001")
    log_file = odd.log_files()[0]
    os.rename(log_file, os.path.join(odd.path, "job.log"))
    os.utime(odd.path, (OLD, OLD))
    write_job(cluster_dir, name="00002", sequencer="001000_00000002",
              parent="cnf.mu2e.CeEndpoint.MDC2020a.001000_00000002.fcl")
    config = make_config(dst_root, duplicate_detection="two-tier")

    summary = cluster_check_flow.fn([str(cluster_dir)], config=config, client=samweb)

    assert summary.total == 2
    assert summary.num_good == 1
    assert summary.counts[FailureReason.LOG_CHECK] == 1
    assert os.path.isdir(os.path.join(dst_root, "failed", "logcheck", CLUSTER, "00", "00001"))
    assert os.path.isdir(os.path.join(dst_root, "good", CLUSTER, "00", "00002"))


def test_dry_run_changes_nothing(cluster_dir, dst_root):
    write_job(cluster_dir, name="00001", sequencer="001000_00000001")
    write_job(cluster_dir, name="00002", sequencer="001000_00000002", grid_status=1)

    summary = cluster_check_flow.fn([str(cluster_dir)], config=make_config(dst_root), dry_run=True)

    assert summary.num_good == 1
    assert summary.counts[FailureReason.EXIT_STATUS] == 1
    assert sorted(os.listdir(str(cluster_dir / "00"))) == ["00001", "00002"]
    assert not os.path.exists(dst_root)


def test_format_report():
    summary = RunSummary(skipped_recent=2, catalog_seconds=1.25, elapsed_seconds=3.0)
    summary.counts[FailureReason.GOOD] = 5
    summary.counts[FailureReason.NO_LOG] = 1

    report = summary.format_report()

    assert report.splitlines()[0] == "Checked 6 job directories in 3.0 s:"
    assert "good" in report
    assert "nolog" in report
    assert "exitstatus" not in report
    assert "skipped as too recent" in report
    assert "1.2 s" in report or "1.3 s" in report
