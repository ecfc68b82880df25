#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
MTC MCU Firmware Tool - Decode, encode and identify MTC head unit MCU images.

OVERVIEW:
    RK3066/RK3188 based car head units made by MTC ship the firmware of their
    embedded MCU (the controller handling power, CAN, keys, radio etc.) inside
    the update package as "mcu.img". That file is not a plain binary: it is
    wrapped in a tiny container with a 4-byte header, and the payload is
    obfuscated with a counter-keyed XOR.

    This tool converts such container into a plain executable image which can
    be loaded into a disassembler, and converts a plain image back into the
    container so it can be flashed by the stock updater. It can also try to
    find the MCU version string, which the firmware keeps as a printf-style
    template followed by its arguments.

KEY CONCEPTS:
    - Encoded image: The shipped container; header followed by XOR'ed payload
    - Raw image: Plain MCU binary, as executed by the controller
    - Signature: The 3 ASCII bytes "mtc" at the start of an encoded image
    - Checksum: 8-bit additive sum; whole encoded file must sum to 0xFF
    - XOR key: Counter starting at 4 and incremented for every payload byte
    - Anchor: The "MTC%s" template string which starts the version metadata
    - Model discriminator: Single digit of KGL hardware sub-variant, found by
      matching a code pattern which loads it

USAGE EXAMPLES:
    Decode MCU image from firmware package to plain binary:
        ./mtc_mcutool.py --verbose -d -i mcu.img -o mcu.bin

    Encode plain binary back to MTC format:
        ./mtc_mcutool.py --verbose -e -i mcu.bin -o mcu.img

    Try to find version of an encoded or plain image:
        ./mtc_mcutool.py -v -i mcu.img

WORKFLOW POSITION:
    [Update package] --> unpack --> [mcu.img]
         |
         +--> mtc_mcutool.py -d (this tool) --> [mcu.bin] --> disassembler
                                                    |
         [mcu.img] <-- mtc_mcutool.py -e <-- [patched mcu.bin]

FILE FORMAT:
    +---------------------------+
    | Signature "mtc" (3 bytes) |
    +---------------------------+
    | Checksum (1 byte)         |  Makes 8-bit sum of the whole file 0xFF
    +---------------------------+
    | Payload (N-4 bytes)       |  byte[i] ^= (4 + i) & 0xFF
    +---------------------------+

    Input files of both kinds must be between 256 and 65536 bytes long.

DEPENDENCIES:
    - Standard library only

AUTHORS:
    Mefistotelis, Original Gangsters

LICENSE:
    GPL-3.0 - See LICENSE file for details
"""

# Copyright (C) 2016,2017 Mefistotelis <mefistotelis@gmail.com>
# Copyright (C) 2018 Original Gangsters <https://dji-rev.slack.com/>
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

__version__ = "0.1.0"
__author__ = "Mefistotelis @ Original Gangsters"
__license__ = "GPL"

import sys
import re
import os
import enum
import argparse
from ctypes import c_char, c_ubyte
from ctypes import sizeof, LittleEndianStructure


def eprint(*args, **kwargs):
    """Print to stderr for error/warning messages.

    Works exactly like print() but outputs to stderr, so that warnings
    are separated from normal program output.
    """
    print(*args, file=sys.stderr, **kwargs)


class MtcError(Exception):
    """Base class for all problems with processing MTC MCU images."""
    pass


class SizeOutOfRangeError(MtcError):
    """Input file size is outside of what an MCU image can have."""
    pass


class NotEncodedError(MtcError):
    """Buffer is not an MTC container (bad signature or checksum)."""
    pass


class NotRawError(MtcError):
    """Buffer does not look like a plain MCU binary."""
    pass


class VersionNotFoundError(MtcError):
    """Version information could not be recovered from the image.

    Every failure of the heuristic extractor derives from this class,
    so callers can treat them all as "version info unavailable".
    """
    pass


class AnchorNotFoundError(VersionNotFoundError):
    pass


class FieldOvershootError(VersionNotFoundError):
    pass


class ZeroSkipExhaustedError(VersionNotFoundError):
    pass


class InvalidImageError(VersionNotFoundError):
    pass


class MtcFormat(enum.IntEnum):
    """Classification of a buffer, recomputed from its content."""
    INVALID = 0
    RAW = 1
    ENCODED = 2


# Accepted size of any input file, in bytes
IMAGE_MIN_SIZE = 256
IMAGE_MAX_SIZE = 65536

# Container header values
MTC_SIGNATURE = b"mtc"
MTC_CHECKSUM_TOTAL = 0xFF
MTC_XOR_KEY = 4

# Raw images start with LJMP opcode of the 8051 core
RAW_FIRST_OPCODE = 0x02

# Version metadata extraction parameters
VERSION_ANCHOR = b"MTC%s"
VERSION_FIELD_SIZE = 32
VERSION_ZERO_SKIP = 10
VERSION_BUF_SIZE = 128
VERSION_BUILD_TYPE = "B"
VERSION_KGL_VARIANT = "KGL"

# Code which loads KGL model digit: LCALL 0xEC00; MOV DPTR,#addr; MOV A,#'1'..'5'
kgl_model_pattern = re.compile(rb"\x12\xEC\x00\x90..\x74([\x31-\x35])", re.DOTALL)


class MtcHeader(LittleEndianStructure):
  """Header of the MTC MCU firmware container.

  Attributes:
      signature (c_char * 3): ASCII "mtc".
      checksum (c_ubyte): Selected so that 8-bit sum of the whole file,
          header included, is 0xFF.
  """
  _pack_ = 1
  _fields_ = [('signature', c_char * 3),   # Offset 0: "mtc"
              ('checksum', c_ubyte)]       # Offset 3: Whole file sum fixup
                                           # Total: 4 bytes

  def dict_export(self):
    d = dict()
    for (varkey, vartype) in self._fields_:
        d[varkey] = getattr(self, varkey)
    varkey = 'checksum'
    d[varkey] = "{:02X}".format(d[varkey])
    return d

  def __repr__(self):
    """Return a pretty-printed string representation of the header."""
    d = self.dict_export()
    from pprint import pformat
    return pformat(d, indent=4, width=1)


class MtcVersionRecord():
    """Fields of the version metadata found within MCU firmware.

    The firmware builds its version string with sprintf(), using a template
    like "MTC%s-%s%s-VXXX", and keeps build date and time nearby. All fields
    start empty and are filled by the extractor; the record is only used to
    render the final string.

    Attributes:
        template (bytes): printf-style template, starting with "MTC%s".
        build_type (bytes): Build type identifier, expected to be "B".
        variant (bytes): Hardware variant name, e.g. "KGL" or "JY".
        model (bytes): Single digit model discriminator, or empty.
        date (bytes): Build date, as compiler __DATE__.
        time (bytes): Build time, as compiler __TIME__.
    """
    def __init__(self):
        self.template = b""
        self.build_type = b""
        self.variant = b""
        self.model = b""
        self.date = b""
        self.time = b""

    def dict_export(self):
        d = dict()
        for varkey in ('template', 'build_type', 'variant', 'model', 'date', 'time'):
            d[varkey] = getattr(self, varkey).decode("utf-8", errors="replace")
        return d

    def render(self):
        """Build the version string, without any length limit.

        Fields are substituted as opaque data; only the template is treated
        as a format, and only its "%s" and "%%" sequences are expanded.
        """
        d = self.dict_export()
        args = iter([d['build_type'], d['variant'], d['model']])

        def expand(m):
            if m.group(1) == '%':
                return '%'
            if m.group(1) == 's':
                return next(args, "")
            return m.group(0)

        ver = re.sub(r'%(.)', expand, d['template'], flags=re.DOTALL)
        return "{:s}\n{:s} {:s}".format(ver, d['date'], d['time'])

    def __repr__(self):
        d = self.dict_export()
        from pprint import pformat
        return pformat(d, indent=4, width=1)


def mtc_calc_checksum(buf):
    """Calculate 8-bit additive checksum of a buffer.

    This is the value stored at offset 3 of the container, after fixup.

    Args:
        buf (bytes): Data to sum

    Returns:
        int: Sum of all bytes, modulo 256
    """
    return sum(buf) & 0xff


def mtc_xor_transform(buf, key):
    """Apply the MTC counter-keyed XOR to a buffer.

    That's all the "encryption" of MCU firmware: every byte is XOR'ed with
    a counter, which starts at given key and wraps at 256. Applying it twice
    with the same key gives back the original data.

    Args:
        buf (bytes): Data to transform
        key (int): Initial counter value

    Returns:
        bytes: Transformed data, same length as input
    """
    return bytes(b ^ ((key + i) & 0xff) for i, b in enumerate(buf))


def mtc_detect_format(buf):
    """Classify buffer as encoded container, raw binary or neither.

    Encoded images are recognized by signature and checksum. For raw images
    the only available hint is the first instruction - reset vector of the
    8051 core starts with LJMP, so first byte is expected to be 0x02.

    Args:
        buf (bytes): Image data, of any length

    Returns:
        MtcFormat: Detected format; never raises
    """
    if len(buf) > 5 and buf[0:3] == MTC_SIGNATURE and mtc_calc_checksum(buf) == MTC_CHECKSUM_TOTAL:
        return MtcFormat.ENCODED
    if len(buf) > 1 and buf[0] == RAW_FIRST_OPCODE:
        return MtcFormat.RAW
    return MtcFormat.INVALID


def mtc_read_header(buf):
    """Get container header from start of the buffer."""
    if len(buf) < sizeof(MtcHeader):
        raise NotEncodedError("Buffer too short to contain MTC header.")
    return MtcHeader.from_buffer_copy(buf[:sizeof(MtcHeader)])


def mtc_decode(buf, force_continue=False):
    """Convert encoded MTC container to raw MCU binary.

    Args:
        buf (bytes): Encoded image, with header
        force_continue (bool): Accept image with valid signature but wrong
            checksum

    Returns:
        bytes: Raw image, 4 bytes shorter than input

    Raises:
        NotEncodedError: If the buffer is not a valid container
    """
    if mtc_detect_format(buf) != MtcFormat.ENCODED:
        if not (force_continue and len(buf) > 5 and buf[0:3] == MTC_SIGNATURE):
            raise NotEncodedError("MCU FW image is invalid or corrupted (signature invalid or checksum error).")
    hdrlen = sizeof(MtcHeader)
    return mtc_xor_transform(buf[hdrlen:], MTC_XOR_KEY)


def mtc_encode(buf):
    """Convert raw MCU binary to encoded MTC container.

    Args:
        buf (bytes): Raw image

    Returns:
        bytes: Encoded image, 4 bytes longer than input

    Raises:
        NotRawError: If the buffer does not look like raw MCU binary
    """
    if mtc_detect_format(buf) != MtcFormat.RAW:
        raise NotRawError("Input does not look like plain MCU binary (no LJMP at reset vector).")
    payload = mtc_xor_transform(buf, MTC_XOR_KEY)
    hdr = MtcHeader()
    hdr.signature = MTC_SIGNATURE
    hdr.checksum = 0
    # Checksum placeholder is zero while summing
    hdr.checksum = (MTC_CHECKSUM_TOTAL - mtc_calc_checksum(bytes(hdr) + payload)) & 0xff
    return bytes(hdr) + payload


def mtc_read_cstring(buf, pos, max_len):
    """Read NUL-terminated string which has to fit within max_len bytes.

    Returns:
        tuple: (string bytes without terminator, position after terminator)
    """
    end = buf.find(b"\x00", pos, pos + max_len)
    if end < 0:
        raise FieldOvershootError("No terminator within {:d} bytes at 0x{:x}.".format(max_len, pos))
    return buf[pos:end], end + 1


def mtc_skip_zeros(buf, pos, max_skip):
    """Skip up to max_skip zero bytes; returns position of next non-zero byte."""
    for n in range(max_skip + 1):
        if pos + n >= len(buf):
            break
        if buf[pos + n] != 0:
            return pos + n
    raise ZeroSkipExhaustedError("No data after {:d} zero bytes at 0x{:x}.".format(max_skip, pos))


def mtc_find_kgl_model(buf):
    """Find model digit of KGL units, by matching code which loads it.

    Returns:
        bytes: Single digit '1'..'5', or empty if no match
    """
    m = kgl_model_pattern.search(buf)
    if m is None:
        return b""
    return m.group(1)


def mtc_extract_version(buf, po=None):
    """Heuristically find version string within raw MCU binary.

    The firmware keeps its version as sprintf() template "MTC%s..." followed
    by arguments of that template, each being NUL-terminated and padded with
    zeros. The fields are: template, build type, hardware variant, build date
    and build time. For KGL units, model digit is not stored as string, but
    loaded in code, so it is found by matching the instructions.

    Args:
        buf (bytes): Raw (decoded) image
        po: Options namespace; used for verbosity and file name in messages

    Returns:
        str: Version string, with build date and time in second line; limited
            to VERSION_BUF_SIZE-1 characters

    Raises:
        VersionNotFoundError: If any stage of the heuristic failed
    """
    verbose = po.verbose if po is not None else 0
    fname = po.input if po is not None else "buffer"
    rec = MtcVersionRecord()

    pos = buf.find(VERSION_ANCHOR)
    if pos < 0:
        raise AnchorNotFoundError("Version template '{:s}' not found.".format(VERSION_ANCHOR.decode("ascii")))
    if (verbose > 1):
        print("{}: Version template found at 0x{:x}".format(fname, pos))

    # Fields in order of appearance; model is not among them
    varkeys = ['template', 'build_type', 'variant', 'date', 'time']
    for i, varkey in enumerate(varkeys):
        if i > 0:
            pos = mtc_skip_zeros(buf, pos, VERSION_ZERO_SKIP)
        val, pos = mtc_read_cstring(buf, pos, VERSION_FIELD_SIZE)
        setattr(rec, varkey, val)
        if (verbose > 2):
            print("{}: Version field {:s} = {}".format(fname, varkey, val))

    if rec.build_type.decode("utf-8", errors="replace") != VERSION_BUILD_TYPE:
        eprint("{}: Warning: Unexpected build type '{:s}', expected '{:s}'; version may be wrong."
          .format(fname, rec.build_type.decode("utf-8", errors="replace"), VERSION_BUILD_TYPE))

    if rec.variant.startswith(VERSION_KGL_VARIANT.encode("ascii")):
        rec.model = mtc_find_kgl_model(buf)
        if (verbose > 1):
            if len(rec.model) > 0:
                print("{}: KGL model digit {:s} found".format(fname, rec.model.decode("ascii")))
            else:
                print("{}: KGL model digit not found".format(fname))

    if (verbose > 2):
        print("{}: Version record:".format(fname))
        print(rec)

    ver = rec.render()
    if len(ver) > VERSION_BUF_SIZE - 1:
        if (verbose > 0):
            eprint("{}: Warning: Version string truncated to {:d} characters."
              .format(fname, VERSION_BUF_SIZE - 1))
        ver = ver[:VERSION_BUF_SIZE - 1]
    return ver


def mtc_image_version(buf, po=None):
    """Find version within image of any supported format."""
    verbose = po.verbose if po is not None else 0
    fname = po.input if po is not None else "buffer"
    imgformat = mtc_detect_format(buf)
    if (verbose > 1):
        print("{}: Detected {:s} image".format(fname, imgformat.name.lower()))
    if imgformat == MtcFormat.ENCODED:
        buf = mtc_decode(buf)
    elif imgformat != MtcFormat.RAW:
        raise InvalidImageError("Input is neither encoded MTC image nor plain MCU binary.")
    return mtc_extract_version(buf, po)


def mtc_load_image(fname):
    """Read whole MCU image file, checking whether its size is sane."""
    with open(fname, "rb") as imgfile:
        buf = imgfile.read(IMAGE_MAX_SIZE + 1)
    if len(buf) > IMAGE_MAX_SIZE:
        raise SizeOutOfRangeError("Input file is too big, not looks like valid MCU FW image.")
    if len(buf) < IMAGE_MIN_SIZE:
        raise SizeOutOfRangeError("Input file is too small, not looks like valid MCU FW image.")
    return buf


def mtc_save_image(po, fname, buf):
    if (po.verbose > 0):
        print("{}: Writing {:d} bytes to {:s}".format(po.input, len(buf), fname))
    if po.dry_run:
        return
    with open(fname, "wb") as imgfile:
        imgfile.write(buf)


def print_banner():
    print("mtc_mcutool: a tool to manipulate MTC MCU firmware images for RK3066/RK3188 headunits.")


def main(argv=None):
    """ Main executable function.

    Its task is to parse command line options and call a function which performs requested command.
    """
    parser = argparse.ArgumentParser(description=__doc__.split('.')[0])

    parser.add_argument('-i', '--input', type=str, required=True,
          help="name of the input MCU image file, encoded or plain")

    parser.add_argument('-o', '--output', type=str,
          help=("name of the output file (default is base name of input with "
           "extension switched to bin when decoding, img when encoding, in working dir)"))

    parser.add_argument('-f', '--force-continue', action='store_true',
          help="force continuing execution despite warning signs of issues")

    parser.add_argument('--dry-run', action='store_true',
          help="do not write any files or do permanent changes")

    parser.add_argument('--verbose', action='count', default=0,
          help="increases verbosity level; max level is set by giving it 3 times")

    subparser = parser.add_mutually_exclusive_group()

    subparser.add_argument('-d', '--decode', action='store_true',
          help="decode MTC MCU image to plain binary")

    subparser.add_argument('-e', '--encode', action='store_true',
          help="encode plain binary MCU image to MTC format")

    subparser.add_argument('-v', '--version-info', action='store_true',
          help="try to heuristically determine and print MCU version")

    subparser.add_argument('--version', action='version', version="%(prog)s {version} by {author}"
            .format(version=__version__, author=__author__),
          help="display version information and exit")

    po = parser.parse_args(argv)

    po.basename = os.path.splitext(os.path.basename(po.input))[0]
    if po.output is None or len(po.output) == 0:
        if po.decode:
            po.output = po.basename + ".bin"
        elif po.encode:
            po.output = po.basename + ".img"

    if (po.verbose > 0):
        print_banner()

    if po.decode:
        if (po.verbose > 0):
            print("{}: Opening for decoding".format(po.input))
        inbuf = mtc_load_image(po.input)
        imgformat = mtc_detect_format(inbuf)
        if (po.verbose > 1):
            print("{}: Detected {:s} image".format(po.input, imgformat.name.lower()))
        if imgformat != MtcFormat.ENCODED and po.force_continue and inbuf[0:3] == MTC_SIGNATURE:
            eprint("{}: Warning: Checksum does not match, sum is {:02X} instead of {:02X}; decoding anyway."
              .format(po.input, mtc_calc_checksum(inbuf), MTC_CHECKSUM_TOTAL))
        if (po.verbose > 1) and inbuf[0:3] == MTC_SIGNATURE:
            print("{}: Header:".format(po.input))
            print(mtc_read_header(inbuf))
        outbuf = mtc_decode(inbuf, force_continue=po.force_continue)
        mtc_save_image(po, po.output, outbuf)

    elif po.encode:
        if (po.verbose > 0):
            print("{}: Opening for encoding".format(po.input))
        inbuf = mtc_load_image(po.input)
        outbuf = mtc_encode(inbuf)
        if (po.verbose > 1):
            print("{}: Header:".format(po.input))
            print(mtc_read_header(outbuf))
        mtc_save_image(po, po.output, outbuf)

    elif po.version_info:
        if (po.verbose > 0):
            print("{}: Opening for version search".format(po.input))
        inbuf = mtc_load_image(po.input)
        print(mtc_image_version(inbuf, po))

    else:
        raise NotImplementedError("Unsupported command.")


def cli():
    """Run main() and convert raised exceptions to error message and exit code."""
    try:
        main()
    except VersionNotFoundError as ex:
        eprint("{:s}: Version info not available: {:s}".format(sys.argv[0], str(ex)))
        sys.exit(2)
    except Exception as ex:
        eprint("Error: "+str(ex))
        sys.exit(2)


if __name__ == '__main__':
    cli()
