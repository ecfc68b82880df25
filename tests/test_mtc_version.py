# -*- coding: utf-8 -*-

""" Test for heuristic extraction of MCU version string.
"""

import argparse

import pytest

from mtc_mcutool import (
  AnchorNotFoundError, FieldOvershootError, ZeroSkipExhaustedError,
  InvalidImageError, VersionNotFoundError, MtcVersionRecord,
  VERSION_BUF_SIZE,
  mtc_encode, mtc_extract_version, mtc_image_version,
  mtc_read_cstring, mtc_skip_zeros, mtc_find_kgl_model,
)


TEMPLATE = b"MTC%s-%s%s-VXXX"
DATE = b"Oct 19 2015"
TIME = b"12:34:56"
KGL_CODE = b"\x12\xEC\x00\x90\x8A\x10\x74"


def make_version_blob(template=TEMPLATE, build_type=b"B", variant=b"JY",
      date=DATE, time=TIME, pad=4):
    """Fields as stored by firmware: NUL-terminated, followed by zero padding."""
    blob = b""
    for field in (template, build_type, variant, date, time):
        blob += field + b"\x00" + bytes(pad)
    return blob


def make_raw_image(blob, code=b""):
    head = b"\x02\x01\x00" + bytes(range(0x30, 0x90)) + code
    return head + b"\xff" * 64 + blob + b"\xa5" * 256


def make_po(verbose=0):
    return argparse.Namespace(input="mcu.bin", verbose=verbose)


def test_extract_version_plain_variant():
    raw = make_raw_image(make_version_blob())
    ver = mtc_extract_version(raw)
    assert ver == "MTCB-JY-VXXX\nOct 19 2015 12:34:56"
    lines = ver.split("\n")
    assert lines[1] == "{:s} {:s}".format(DATE.decode(), TIME.decode())


def test_extract_version_verbose_output(capsys):
    raw = make_raw_image(make_version_blob())
    mtc_extract_version(raw, make_po(verbose=3))
    out = capsys.readouterr().out
    assert "Version template found at" in out
    assert "build_type" in out


@pytest.mark.parametrize("digit", [b"1", b"3", b"5"])
def test_extract_version_kgl_model(digit):
    raw = make_raw_image(make_version_blob(variant=b"KGL"), code=KGL_CODE + digit)
    assert mtc_extract_version(raw) == "MTCB-KGL{:s}-VXXX\nOct 19 2015 12:34:56".format(digit.decode())


def test_extract_version_kgl_model_out_of_range():
    raw = make_raw_image(make_version_blob(variant=b"KGL"), code=KGL_CODE + b"6")
    assert mtc_extract_version(raw).startswith("MTCB-KGL-VXXX\n")


def test_extract_version_kgl_without_model_code():
    raw = make_raw_image(make_version_blob(variant=b"KGL"))
    assert mtc_extract_version(raw).startswith("MTCB-KGL-VXXX\n")


def test_extract_version_model_only_for_kgl():
    raw = make_raw_image(make_version_blob(variant=b"JY"), code=KGL_CODE + b"2")
    assert mtc_extract_version(raw).startswith("MTCB-JY-VXXX\n")


def test_find_kgl_model():
    assert mtc_find_kgl_model(b"\x00" + KGL_CODE + b"4\x00") == b"4"
    assert mtc_find_kgl_model(b"\x00" + KGL_CODE[:-1] + b"\x75\x34") == b""
    # Wildcard bytes may hold any value, including newline
    assert mtc_find_kgl_model(b"\x12\xEC\x00\x90\x0a\x0a\x74\x31") == b"1"


def test_extract_version_unexpected_build_type_only_warns(capsys):
    raw = make_raw_image(make_version_blob(build_type=b"R"))
    ver = mtc_extract_version(raw)
    assert ver.startswith("MTCR-JY-VXXX\n")
    assert "Warning" in capsys.readouterr().err


def test_extract_version_no_anchor():
    raw = make_raw_image(make_version_blob(template=b"XYZ%s-%s%s"))
    with pytest.raises(AnchorNotFoundError):
        mtc_extract_version(raw)


def test_extract_version_field_overshoot():
    raw = make_raw_image(make_version_blob(variant=b"K" * 40))
    with pytest.raises(FieldOvershootError):
        mtc_extract_version(raw)


def test_extract_version_field_at_buffer_end():
    raw = b"\x02\x00" + b"MTC%s-%s%s-VXXX"
    with pytest.raises(FieldOvershootError):
        mtc_extract_version(raw)


def test_extract_version_max_field_width():
    # 31 characters and terminator fill the whole field
    raw = make_raw_image(make_version_blob(date=b"D" * 31))
    assert mtc_extract_version(raw).endswith("\n" + "D" * 31 + " 12:34:56")
    raw = make_raw_image(make_version_blob(date=b"D" * 32))
    with pytest.raises(FieldOvershootError):
        mtc_extract_version(raw)


def test_extract_version_zero_skip_limit():
    raw = make_raw_image(make_version_blob(pad=10))
    assert mtc_extract_version(raw).startswith("MTCB-JY-VXXX\n")
    raw = make_raw_image(make_version_blob(pad=11))
    with pytest.raises(ZeroSkipExhaustedError):
        mtc_extract_version(raw)


def test_extract_version_errors_share_base():
    for exc in (AnchorNotFoundError, FieldOvershootError, ZeroSkipExhaustedError, InvalidImageError):
        assert issubclass(exc, VersionNotFoundError)


def test_read_cstring_and_skip_zeros():
    buf = b"AB\x00\x00\x00C\x00"
    val, pos = mtc_read_cstring(buf, 0, 32)
    assert (val, pos) == (b"AB", 3)
    assert mtc_skip_zeros(buf, pos, 10) == 5
    assert mtc_skip_zeros(buf, 5, 10) == 5
    with pytest.raises(ZeroSkipExhaustedError):
        mtc_skip_zeros(buf, 7, 10)
    with pytest.raises(FieldOvershootError):
        mtc_read_cstring(b"ABCD\x00", 0, 4)


def test_render_treats_fields_as_data():
    raw = make_raw_image(make_version_blob(variant=b"%s%x%n"))
    assert mtc_extract_version(raw).startswith("MTCB-%s%x%n-VXXX\n")


def test_render_template_directives():
    rec = MtcVersionRecord()
    rec.template = b"MTC%s 100%% %d %s%s%s"
    rec.build_type = b"B"
    rec.variant = b"KGL"
    rec.date = b"d"
    rec.time = b"t"
    assert rec.render() == "MTCB 100% %d KGL\nd t"


def test_version_record_starts_empty():
    rec = MtcVersionRecord()
    assert all(v == "" for v in rec.dict_export().values())


def test_extract_version_truncated_output():
    blob = make_version_blob(template=b"MTC%s-%s%s-VXXXXXXXXXXXXXXX",
          build_type=b"B" * 31, variant=b"V" * 31, date=b"D" * 31, time=b"T" * 31)
    raw = make_raw_image(blob)
    ver = mtc_extract_version(raw)
    assert len(ver) == VERSION_BUF_SIZE - 1
    assert ver.startswith("MTC" + "B" * 31 + "-" + "V" * 31 + "-VXXX")


def test_image_version_of_encoded_image():
    raw = make_raw_image(make_version_blob())
    assert mtc_image_version(mtc_encode(raw), make_po()) == mtc_extract_version(raw)


def test_image_version_of_invalid_image():
    with pytest.raises(InvalidImageError):
        mtc_image_version(b"\x00" + make_version_blob())
