import subprocess

import pytest

from filetools.enstore import EnstoreClient, TapeInfo, filter_location_cookie, make_location, tape_backed
from filetools.errors import TapeLookupError

PATH = "/pnfs/mu2e/tape/usr-etc/bck/mu2e/CeEndpoint/MDC2020a/tgz/ab/cd/bck.mu2e.CeEndpoint.MDC2020a.001000_00000017.tgz"


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def file_info(label, cookie, package=None):
    package_id = f"'{package}'" if package else "None"
    return (
        "{'bfid': 'CDMS123', 'external_label': '%s', 'location_cookie': '%s', 'package_id': %s}"
        % (label, cookie, package_id)
    )


@pytest.fixture
def enstore(mocker):
    mocker.patch("filetools.enstore.shutil.which", return_value="/usr/bin/enstore")
    return EnstoreClient()


###############################################################################
# Location strings
###############################################################################
def test_tape_location():
    location = make_location(PATH, TapeInfo(label="VR1234", location_cookie="12"))
    assert location == "enstore:/pnfs/mu2e/tape/usr-etc/bck/mu2e/CeEndpoint/MDC2020a/tgz/ab/cd(12@VR1234)"


def test_tape_location_needs_tape_info():
    with pytest.raises(ValueError):
        make_location(PATH)


def test_disk_location():
    assert make_location("/pnfs/mu2e/persistent/datasets/x/file.art") == "dcache:/pnfs/mu2e/persistent/datasets/x"
    assert make_location("/pnfs/mu2e/scratch/datasets/x/file.art") == "dcache:/pnfs/mu2e/scratch/datasets/x"


def test_unknown_location():
    with pytest.raises(ValueError):
        make_location("/home/mu2e/file.art")


def test_tape_backed():
    assert tape_backed(PATH)
    assert not tape_backed("/pnfs/mu2e/persistent/x")


def test_filter_location_cookie():
    info = filter_location_cookie(TapeInfo(label="VR1234", location_cookie="0000_000000000_0000012"))
    assert info == TapeInfo(label="VR1234", location_cookie="12")


def test_filter_location_cookie_rejects_garbage():
    with pytest.raises(TapeLookupError):
        filter_location_cookie(TapeInfo(label="VR1234", location_cookie="/volumes/aggread/cache"))


###############################################################################
# enstore queries
###############################################################################
def test_get_info(enstore, mocker):
    run = mocker.patch("filetools.enstore.subprocess.run", side_effect=[
        completed("CDMS123\n"),
        completed(file_info("VR1234", "0000_000000000_0000012")),
    ])

    assert enstore.get_info(PATH) == TapeInfo(label="VR1234", location_cookie="12")
    assert run.call_args_list[0].args[0] == ["enstore", "pnfs", "--bfid", PATH]
    assert run.call_args_list[1].args[0] == ["enstore", "info", "--bfid", "CDMS123"]


def test_get_info_not_on_tape(enstore, mocker):
    mocker.patch("filetools.enstore.subprocess.run", return_value=completed(returncode=1))
    assert enstore.get_info(PATH) is None


def test_get_info_package_member(enstore, mocker):
    mocker.patch("filetools.enstore.subprocess.run", side_effect=[
        completed("CDMS123\n"),
        completed(file_info("VR1234:asdf", "/volumes/aggread/cache", package="CDMS999")),
        completed(file_info("VR5678", "0000_000000000_0000034")),
    ])
    assert enstore.get_info(PATH) == TapeInfo(label="VR5678", location_cookie="34")


def test_get_info_package_not_written_yet(enstore, mocker):
    mocker.patch("filetools.enstore.subprocess.run", side_effect=[
        completed("CDMS123\n"),
        completed(file_info("VR1234:asdf", "/volumes/aggread/cache")),
    ])
    assert enstore.get_info(PATH) is None


def test_query_failure_is_fatal(enstore, mocker):
    mocker.patch("filetools.enstore.subprocess.run", side_effect=[
        completed("CDMS123\n"),
        completed(returncode=2, stderr="no such bfid"),
    ])
    with pytest.raises(TapeLookupError):
        enstore.get_info(PATH)


def test_unparsable_info_is_fatal(enstore, mocker):
    mocker.patch("filetools.enstore.subprocess.run", side_effect=[
        completed("CDMS123\n"),
        completed("garbage"),
    ])
    with pytest.raises(TapeLookupError):
        enstore.get_info(PATH)


def test_missing_command(mocker):
    mocker.patch("filetools.enstore.shutil.which", return_value=None)
    with pytest.raises(TapeLookupError):
        EnstoreClient().get_info(PATH)
