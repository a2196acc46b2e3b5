import struct

import pytest

from hami.shared_region import SharedRegionV0, SharedRegionV1

U64 = struct.Struct("=Q")
I32 = struct.Struct("=i")
I64 = struct.Struct("=q")

# Byte offsets of the two layouts as laid out in memory.
LAYOUTS = {
    "v0": dict(
        size=1197896, num=48, uuids=56, limit=1592, sm_limit=1720,
        procs=1848, slot=1168, used=8, mem_stride=40, util=776, util_stride=24,
        switch=1197884, recent=1197888, priority=1197892,
    ),
    "v1": dict(
        size=2008952, num=56, uuids=64, limit=1600, sm_limit=1728,
        procs=1856, slot=1960, used=8, mem_stride=64, util=1160, util_stride=48,
        switch=2008900, recent=2008904, priority=2008908,
    ),
}

MEM_FIELDS = {
    "device_memory_context_size": 0,
    "device_memory_module_size": 8,
    "device_memory_buffer_size": 16,
    "device_memory_offset": 24,
    "device_memory_total": 32,
}


def make(version, num=None, limits=(), uuids=()):
    lay = LAYOUTS[version]
    buf = bytearray(lay["size"])
    if num is not None:
        U64.pack_into(buf, lay["num"], num)
    for i, value in enumerate(limits):
        U64.pack_into(buf, lay["limit"] + 8 * i, value)
    for i, raw in enumerate(uuids):
        start = lay["uuids"] + 96 * i
        buf[start : start + len(raw)] = raw
    return buf, lay


def put_mem(buf, lay, proc, dev, field, value):
    offset = lay["procs"] + proc * lay["slot"] + lay["used"] + dev * lay["mem_stride"] + field
    U64.pack_into(buf, offset, value)


def put_sm(buf, lay, proc, dev, value):
    offset = lay["procs"] + proc * lay["slot"] + lay["util"] + dev * lay["util_stride"] + 16
    U64.pack_into(buf, offset, value)


def read_u64s(buf, base, count=16):
    return [U64.unpack_from(buf, base + 8 * i)[0] for i in range(count)]


@pytest.mark.parametrize("version", ["v0", "v1"])
@pytest.mark.parametrize("num", [8, 16])
def test_device_max(version, num):
    buf, _ = make(version, num=num)
    region = SharedRegionV0(buf) if version == "v0" else SharedRegionV1(buf)
    assert region.device_max() == 16


@pytest.mark.parametrize("version,num", [("v0", 4), ("v0", 8), ("v1", 2), ("v1", 4)])
def test_device_num(version, num):
    buf, _ = make(version, num=num)
    region = SharedRegionV0(buf) if version == "v0" else SharedRegionV1(buf)
    assert region.device_num() == num


@pytest.mark.parametrize("method,field", MEM_FIELDS.items())
@pytest.mark.parametrize("idx,expected", [(1, 600), (0, 400)])
def test_v0_memory_sums(method, field, idx, expected):
    buf, lay = make("v0", num=2)
    for proc, values in enumerate([(100, 200), (300, 400)]):
        for dev, value in enumerate(values):
            put_mem(buf, lay, proc, dev, field, value)
    assert getattr(SharedRegionV0(buf), method)(idx) == expected


@pytest.mark.parametrize("method,field", MEM_FIELDS.items())
@pytest.mark.parametrize("idx,expected", [(0, 200), (1, 400)])
def test_v1_memory_sums(method, field, idx, expected):
    buf, lay = make("v1")
    for proc in range(2):
        for dev, value in enumerate((100, 200)):
            put_mem(buf, lay, proc, dev, field, value)
    assert getattr(SharedRegionV1(buf), method)(idx) == expected


def test_memory_fields_do_not_overlap():
    buf, lay = make("v1")
    put_mem(buf, lay, 0, 0, MEM_FIELDS["device_memory_total"], 77)
    region = SharedRegionV1(buf)
    assert region.device_memory_total(0) == 77
    assert region.device_memory_context_size(0) == 0
    assert region.device_memory_total(1) == 0


@pytest.mark.parametrize("idx,expected", [(1, 600), (0, 400)])
def test_v0_sm_util(idx, expected):
    buf, lay = make("v0", num=2)
    for proc, values in enumerate([(100, 200), (300, 400)]):
        for dev, value in enumerate(values):
            put_sm(buf, lay, proc, dev, value)
    assert SharedRegionV0(buf).device_sm_util(idx) == expected


@pytest.mark.parametrize("idx,expected", [(0, 200), (1, 400)])
def test_v1_sm_util(idx, expected):
    buf, lay = make("v1")
    for proc in range(2):
        for dev, value in enumerate((100, 200)):
            put_sm(buf, lay, proc, dev, value)
    assert SharedRegionV1(buf).device_sm_util(idx) == expected


def test_sum_covers_last_process():
    buf, lay = make("v0")
    put_mem(buf, lay, 1023, 3, MEM_FIELDS["device_memory_buffer_size"], 5)
    put_mem(buf, lay, 0, 3, MEM_FIELDS["device_memory_buffer_size"], 6)
    assert SharedRegionV0(buf).device_memory_buffer_size(3) == 11


@pytest.mark.parametrize("idx,expected", [(0, 1024), (1, 2048)])
def test_v0_device_memory_limit(idx, expected):
    buf, _ = make("v0", limits=(1024, 2048, 3072, 4096))
    assert SharedRegionV0(buf).device_memory_limit(idx) == expected


@pytest.mark.parametrize("idx,expected", [(0, 100), (1, 200)])
def test_v1_device_memory_limit(idx, expected):
    buf, _ = make("v1", limits=(100, 200))
    assert SharedRegionV1(buf).device_memory_limit(idx) == expected


@pytest.mark.parametrize("num,limit", [(2, 1000), (3, 2000)])
def test_v0_set_device_sm_limit(num, limit):
    buf, lay = make("v0", num=num)
    SharedRegionV0(buf).set_device_sm_limit(limit)
    assert read_u64s(buf, lay["sm_limit"]) == [limit] * num + [0] * (16 - num)


def test_v1_set_device_sm_limit():
    buf, lay = make("v1", num=2)
    SharedRegionV1(buf).set_device_sm_limit(300)
    assert read_u64s(buf, lay["sm_limit"]) == [300, 300] + [0] * 14


def test_v0_set_device_memory_limit():
    buf, lay = make("v0", num=3, limits=(100, 200, 300))
    region = SharedRegionV0(buf)
    region.set_device_memory_limit(500)
    assert [region.device_memory_limit(i) for i in range(3)] == [500, 500, 500]
    assert read_u64s(buf, lay["limit"])[3:] == [0] * 13


@pytest.mark.parametrize("num,limit", [(1, 1024), (2, 2048)])
def test_v1_set_device_memory_limit(num, limit):
    buf, lay = make("v1", num=num)
    SharedRegionV1(buf).set_device_memory_limit(limit)
    assert read_u64s(buf, lay["limit"]) == [limit] * num + [0] * (16 - num)


def test_set_limit_with_too_many_devices_raises():
    buf, _ = make("v1", num=17)
    with pytest.raises(IndexError):
        SharedRegionV1(buf).set_device_memory_limit(1)


@pytest.mark.parametrize("version", ["v0", "v1"])
@pytest.mark.parametrize("first,expected", [(1, True), (0, False)])
def test_is_valid_uuid(version, first, expected):
    buf, _ = make(version, uuids=(bytes([first]),))
    region = SharedRegionV0(buf) if version == "v0" else SharedRegionV1(buf)
    assert region.is_valid_uuid(0) is expected


@pytest.mark.parametrize(
    "version,uuids,idx,expected",
    [
        ("v0", (b"abcd",), 0, "abcd"),
        ("v0", (b"efgh", b"ijkl"), 1, "ijkl"),
        ("v1", (b"a1b2",), 0, "a1b2"),
        ("v1", (b"a1b2", b"c3d4"), 1, "c3d4"),
    ],
)
def test_device_uuid(version, uuids, idx, expected):
    buf, _ = make(version, uuids=uuids)
    region = SharedRegionV0(buf) if version == "v0" else SharedRegionV1(buf)
    result = region.device_uuid(idx)
    assert result[:4] == expected
    assert len(result) == 96


@pytest.mark.parametrize("version,value", [("v0", 5), ("v1", 1)])
def test_priority(version, value):
    buf, lay = make(version)
    I32.pack_into(buf, lay["priority"], value)
    region = SharedRegionV0(buf) if version == "v0" else SharedRegionV1(buf)
    assert region.priority == value


@pytest.mark.parametrize("version,value", [("v0", 12345), ("v1", 1234)])
def test_get_recent_kernel(version, value):
    buf, lay = make(version)
    I32.pack_into(buf, lay["recent"], value)
    region = SharedRegionV0(buf) if version == "v0" else SharedRegionV1(buf)
    assert region.recent_kernel == value


@pytest.mark.parametrize("version,value", [("v0", 67890), ("v1", 1111)])
def test_set_recent_kernel(version, value):
    buf, lay = make(version)
    region = SharedRegionV0(buf) if version == "v0" else SharedRegionV1(buf)
    region.recent_kernel = value
    assert region.recent_kernel == value
    assert I32.unpack_from(buf, lay["recent"])[0] == value


@pytest.mark.parametrize("version,value", [("v0", 1), ("v1", 1234)])
def test_get_utilization_switch(version, value):
    buf, lay = make(version)
    I32.pack_into(buf, lay["switch"], value)
    region = SharedRegionV0(buf) if version == "v0" else SharedRegionV1(buf)
    assert region.utilization_switch == value


@pytest.mark.parametrize("version,value", [("v0", 2), ("v1", 3333)])
def test_set_utilization_switch(version, value):
    buf, lay = make(version)
    region = SharedRegionV0(buf) if version == "v0" else SharedRegionV1(buf)
    region.utilization_switch = value
    assert I32.unpack_from(buf, lay["switch"])[0] == value


def test_v0_last_kernel_time_is_zero():
    buf, _ = make("v0")
    assert SharedRegionV0(buf).last_kernel_time == 0


def test_v1_last_kernel_time():
    buf, _ = make("v1")
    I64.pack_into(buf, 2008912, 1234)
    assert SharedRegionV1(buf).last_kernel_time == 1234


def test_v1_version_header_and_flag():
    buf, _ = make("v1")
    I32.pack_into(buf, 0, 19920718)
    I32.pack_into(buf, 4, 1)
    I32.pack_into(buf, 8, 0)
    region = SharedRegionV1(buf)
    assert region.initialized_flag == 19920718
    assert region.major_version == 1
    assert region.minor_version == 0


def test_v0_exact_size_buffer_reaches_last_field():
    assert SharedRegionV0.SIZE == LAYOUTS["v0"]["size"]
    buf = bytearray(LAYOUTS["v0"]["size"])
    I32.pack_into(buf, LAYOUTS["v0"]["priority"], 9)
    region = SharedRegionV0(buf)
    assert region.priority == 9
    assert region.device_num() == 0


def test_v1_exact_size_buffer_reaches_last_field():
    assert SharedRegionV1.SIZE == LAYOUTS["v1"]["size"]
    buf = bytearray(LAYOUTS["v1"]["size"])
    I32.pack_into(buf, LAYOUTS["v1"]["priority"], 9)
    region = SharedRegionV1(buf)
    assert region.priority == 9
    assert region.device_num() == 0


def test_v0_short_buffer_rejected():
    with pytest.raises(ValueError):
        SharedRegionV0(bytearray(LAYOUTS["v0"]["size"] - 1))


def test_v1_short_buffer_rejected():
    with pytest.raises(ValueError):
        SharedRegionV1(bytearray(LAYOUTS["v1"]["size"] - 1))


@pytest.mark.parametrize("idx", [-1, 16])
def test_index_out_of_range(idx):
    buf, _ = make("v0")
    region = SharedRegionV0(buf)
    with pytest.raises(IndexError):
        region.device_memory_limit(idx)
    with pytest.raises(IndexError):
        region.device_uuid(idx)