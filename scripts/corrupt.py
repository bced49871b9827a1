from __future__ import annotations

import argparse
import os
import random
import sys
from dataclasses import dataclass
from typing import List, Optional

from keepsake.constants import MAC_SIZE
from keepsake.errors import KeepsakeError
from keepsake.frames import STREAMED_FRAMES, End
from keepsake.framing import BackupFrameReader
from keepsake.kdf import DEFAULT_KDF


@dataclass
class _Region:
    kind: str       # "frame" or "payload"
    name: str       # frame class name
    offset: int     # absolute offset of the region (after any length prefix)
    length: int     # region length including the trailing MAC


def _flip_byte(path: str, offset: int, xor_val: int = 0xFF) -> None:
    if offset < 0:
        raise ValueError("Offset must be non-negative")
    with open(path, "r+b") as f:
        f.seek(offset)
        b = f.read(1)
        if not b:
            raise ValueError("Offset beyond end of file")
        f.seek(offset)
        f.write(bytes([b[0] ^ (xor_val & 0xFF)]))
        f.flush()
        os.fsync(f.fileno())


def _walk(path: str, password: str) -> List[_Region]:
    """Map every encrypted frame body and streamed payload of a backup."""
    regions: List[_Region] = []
    with open(path, "rb") as f:
        reader = BackupFrameReader(f, password, DEFAULT_KDF)
        while True:
            start = f.tell() + 4
            frame = reader.read_frame()
            name = type(frame).__name__ if frame is not None else "Unknown"
            regions.append(_Region("frame", name, start, f.tell() - start))
            if isinstance(frame, End):
                break
            if isinstance(frame, STREAMED_FRAMES):
                regions.append(_Region("payload", name, f.tell(), frame.length + MAC_SIZE))
                reader.skip_stream(frame.length)
    return regions


def _pick(regions: List[_Region], kind: str, index: int) -> _Region:
    matching = [r for r in regions if r.kind == kind]
    if index < 0 or index >= len(matching):
        raise ValueError(f"{kind} index out of range (0..{len(matching)-1})")
    return matching[index]


def _offset_within(region: _Region, within: int, tag: bool) -> int:
    if tag:
        if within < 0 or within >= MAC_SIZE:
            raise ValueError(f"--within must address the tag (0..{MAC_SIZE-1})")
        return region.offset + region.length - MAC_SIZE + within
    if within < 0 or within >= region.length - MAC_SIZE:
        raise ValueError(f"--within must be within the ciphertext (0..{region.length - MAC_SIZE - 1})")
    return region.offset + within


def cmd_by_offset(args: argparse.Namespace) -> None:
    _flip_byte(args.backup, args.offset, xor_val=args.xor)
    print(f"Flipped 1 byte at offset {args.offset}")


def cmd_frame(args: argparse.Namespace) -> None:
    region = _pick(_walk(args.backup, args.password), "frame", args.index)
    off = _offset_within(region, args.within, args.tag)
    _flip_byte(args.backup, off, xor_val=args.xor)
    print(f"Flipped 1 byte in frame {args.index} ({region.name}) at offset {off}")


def cmd_payload(args: argparse.Namespace) -> None:
    region = _pick(_walk(args.backup, args.password), "payload", args.index)
    off = _offset_within(region, args.within, args.tag)
    _flip_byte(args.backup, off, xor_val=args.xor)
    print(f"Flipped 1 byte in {region.name.lower()} payload {args.index} at offset {off}")


def cmd_map(args: argparse.Namespace) -> None:
    for r in _walk(args.backup, args.password):
        print(f"{r.kind:8s} {r.name:16s} offset={r.offset} length={r.length}")


def cmd_random(args: argparse.Namespace) -> None:
    rng = random.Random(args.seed)
    flips = 0
    size = os.path.getsize(args.backup)
    with open(args.backup, "r+b") as f:
        for _ in range(args.count):
            pos = rng.randrange(0, size)
            f.seek(pos)
            b = f.read(1)
            if not b:
                continue
            f.seek(pos)
            f.write(bytes([b[0] ^ (args.xor & 0xFF)]))
            flips += 1
        f.flush()
        os.fsync(f.fileno())
    print(f"Flipped {flips} byte(s) at random offsets")


def _hex_int(x: str) -> int:
    return int(x, 0)


def main(argv: Optional[list[str]] = None) -> None:
    ap = argparse.ArgumentParser(prog="keepsake.corrupt", description="Corrupt Keepsake backups for testing")
    sub = ap.add_subparsers(dest="cmd", required=False)

    p_off = sub.add_parser("by-offset", help="Flip one byte at an absolute file offset")
    p_off.add_argument("backup", help="Path to backup file")
    p_off.add_argument("--offset", type=int, required=True, help="Absolute byte offset")
    p_off.add_argument("--xor", type=_hex_int, default=0xFF, help="XOR mask to apply (default 0xFF)")
    p_off.set_defaults(func=cmd_by_offset)

    for name, func, what in (("frame", cmd_frame, "encrypted frame"), ("payload", cmd_payload, "streamed payload")):
        p = sub.add_parser(name, help=f"Flip a byte within the Nth {what} (0-based)")
        p.add_argument("backup", help="Path to backup file")
        p.add_argument("--password", required=True, help="Backup passphrase (needed to locate payloads)")
        p.add_argument("--index", type=int, required=True, help=f"{what.capitalize()} index (0-based)")
        p.add_argument("--within", type=int, default=0, help="Byte offset within the ciphertext or tag (default 0)")
        p.add_argument("--tag", action="store_true", help="Corrupt the 10-byte MAC instead of the ciphertext")
        p.add_argument("--xor", type=_hex_int, default=0xFF, help="XOR mask to apply (default 0xFF)")
        p.set_defaults(func=func)

    p_map = sub.add_parser("map", help="Print the offsets of every frame and payload")
    p_map.add_argument("backup", help="Path to backup file")
    p_map.add_argument("--password", required=True, help="Backup passphrase")
    p_map.set_defaults(func=cmd_map)

    p_rand = sub.add_parser("random", help="Flip N random bytes anywhere in the file")
    p_rand.add_argument("backup", help="Path to backup file")
    p_rand.add_argument("--count", type=int, default=1, help="Number of random byte flips (default 1)")
    p_rand.add_argument("--seed", type=int, default=None, help="PRNG seed for reproducibility")
    p_rand.add_argument("--xor", type=_hex_int, default=0xFF, help="XOR mask to apply (default 0xFF)")
    p_rand.set_defaults(func=cmd_random)

    # A bare path (no subcommand) means: flip one random byte
    subcommands = {"by-offset", "frame", "payload", "map", "random"}
    if argv is None:
        argv = sys.argv[1:]
    if argv and (argv[0] not in subcommands) and (not argv[0].startswith("-")):
        argv = ["random"] + list(argv)

    args = ap.parse_args(argv)
    if not getattr(args, "func", None):
        ap.print_help()
        sys.exit(2)
    try:
        args.func(args)
    except (KeepsakeError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
