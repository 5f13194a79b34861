"""Bitmap program codec.

A program is drawn as square blocks of ``BLOCK_SIDE`` pixels, one solid
colour per instruction, laid out left to right and top to bottom on a
square canvas. Trailing blocks are painted with the no-op colour, which
decoding skips. Decoding produces the same ``SYMBOL`` tokens the text
lexer does, so a bitmap feeds the ordinary parser.
"""

from __future__ import annotations

import math
from typing import BinaryIO, List, Sequence, Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from instructions import CALL, KIND_BY_COLOR, NOOP_COLOR, SPECS_BY_KIND, Instruction
from lexer import InvalidBitmapError, InvalidInstructionError, Token


BLOCK_SIDE = 3
FILE_FORMAT = "BMP"
FILE_SUFFIX = ".bmp"


def _hex_to_rgb(code: str) -> Tuple[int, int, int]:
    return int(code[0:2], 16), int(code[2:4], 16), int(code[4:6], 16)


def _rgb_to_hex(pixel: Sequence[int]) -> str:
    return "".join(f"{int(channel):02X}" for channel in pixel[:3])


def encode(instructions: Sequence[Instruction], *, block_side: int = BLOCK_SIDE) -> Image.Image:
    colors: List[str] = []
    for instruction in instructions:
        if instruction.kind == CALL:
            raise InvalidInstructionError(
                f"Function call '{instruction.symbol}' has no bitmap colour", location=instruction.location
            )
        colors.append(SPECS_BY_KIND[instruction.kind].color)

    # Always at least one block so that an empty program is still an image.
    per_row = max(1, math.ceil(math.sqrt(len(colors))))
    side = per_row * block_side
    pixels = np.empty((side, side, 3), dtype=np.uint8)
    pixels[:, :] = _hex_to_rgb(NOOP_COLOR)
    for index, color in enumerate(colors):
        row, column = divmod(index, per_row)
        y, x = row * block_side, column * block_side
        pixels[y:y + block_side, x:x + block_side] = _hex_to_rgb(color)
    return Image.fromarray(pixels)


def decode(image: Image.Image, *, block_side: int = BLOCK_SIDE) -> List[Token]:
    pixels = np.asarray(image.convert("RGB"))
    height, width = pixels.shape[0], pixels.shape[1]
    if height % block_side != 0 or width % block_side != 0:
        raise InvalidBitmapError(
            f"Image size {width}x{height} is not a multiple of the {block_side}-pixel block"
        )

    tokens: List[Token] = []
    for y in range(0, height, block_side):
        for x in range(0, width, block_side):
            block = pixels[y:y + block_side, x:x + block_side]
            first = block[0, 0]
            if not np.all(block == first):
                raise InvalidBitmapError(f"Block at pixel ({x}, {y}) is not a single colour")
            color = _rgb_to_hex(first)
            if color == NOOP_COLOR:
                continue
            line, column = y // block_side + 1, x // block_side + 1
            kind = KIND_BY_COLOR.get(color)
            if kind is None:
                raise InvalidInstructionError(
                    f"Unknown instruction colour #{color} at block {line}:{column}"
                )
            tokens.append(Token("SYMBOL", SPECS_BY_KIND[kind].symbol, line, column))
    tokens.append(Token("EOF", "", height // block_side + 1, 1))
    return tokens


def read_bitmap(source: Union[str, BinaryIO], *, block_side: int = BLOCK_SIDE) -> List[Token]:
    try:
        with Image.open(source) as image:
            image.load()
            return decode(image, block_side=block_side)
    except UnidentifiedImageError as exc:
        raise InvalidBitmapError(f"Cannot read image: {exc}")


def write_bitmap(instructions: Sequence[Instruction], target: Union[str, BinaryIO], *, block_side: int = BLOCK_SIDE) -> None:
    encode(instructions, block_side=block_side).save(target, format=FILE_FORMAT)


def is_bitmap_path(path: str) -> bool:
    return path.lower().endswith(FILE_SUFFIX)
