import pytest

from lmstfy.codec import (
    CorruptedDataError,
    Job,
    QueueName,
    is_lua_script_gone,
    join,
    splits,
    struct_pack,
    struct_unpack,
)


def test_struct_packing_round_trip():
    tries = 23
    job_id = " a test ID#"
    data = struct_pack(tries, job_id)
    assert struct_unpack(data) == (tries, job_id)


def test_struct_pack_layout():
    assert struct_pack(1, "x") == b"\x01\x00\x01\x00x"
    assert struct_pack(0x0102, "ab") == b"\x02\x01\x02\x00ab"


def test_struct_unpack_accepts_str():
    assert struct_unpack("\x02\x00\x03\x00abc") == (2, "abc")


@pytest.mark.parametrize("data", [b"", b"\x01", b"\x01\x00\x05\x00abc"])
def test_struct_unpack_corrupted(data):
    with pytest.raises(CorruptedDataError):
        struct_unpack(data)


def test_struct_pack_rejects_out_of_range_tries():
    with pytest.raises(ValueError):
        struct_pack(70000, "x")


def test_queue_name_string():
    assert str(QueueName("ns", "q1")) == "q2/ns/q1"


def test_queue_name_decode_round_trip():
    name = QueueName("ns-queueName", "q7")
    assert QueueName.decode(str(name)) == name
    assert QueueName.decode(b"q2/ns/a/b") == QueueName("ns", "a/b")


@pytest.mark.parametrize("text", ["j2/ns/q", "q2/ns", "garbage"])
def test_queue_name_decode_invalid(text):
    with pytest.raises(ValueError, match="invalid format"):
        QueueName.decode(text)


def test_join_and_splits():
    assert join("j2", "ns", "q", "id") == "j2/ns/q/id"
    assert splits(3, "a/b/c/d") == ["a", "b", "c/d"]
    assert splits(-1, "a/b/c") == ["a", "b", "c"]
    assert splits(0, "a/b") == []


def test_is_lua_script_gone():
    assert is_lua_script_gone(Exception("NOSCRIPT No matching script"))
    assert not is_lua_script_gone(Exception("ERR something"))
    assert is_lua_script_gone("NOSCRIPT")


def test_job_generates_unique_ids_of_fixed_length():
    first = Job("ns-queue", "q9", b"hello msg", 30, 0, 2)
    second = Job("ns-queue", "q9", b"hello msg", 30, 0, 2)
    assert len(first.id) == 26
    assert first.id != second.id


def test_job_keeps_given_id():
    job = Job("ns-engine", "q8", b"hello msg 1", 10, 0, 1, "jobID1")
    assert job.id == "jobID1"
    assert job.elapsed_ms == 0


def test_job_elapsed_ms_is_small_for_new_job():
    job = Job("ns", "q", b"x", 10, 0, 1)
    assert 0 <= job.elapsed_ms < 5000