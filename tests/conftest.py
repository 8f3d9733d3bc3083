import struct
import pytest


RESOURCE_ID_BASE = 0x00200000
RESOURCE_ID_MASK = 0x001FFFFF


def pad(n):
    return (4 - n % 4) % 4


def build_visual(visual_id=0x21, visual_class=4, bits_per_rgb=8,
        colourmap_entries=256, masks=(0xff0000, 0x00ff00, 0x0000ff)):

    return struct.pack('<IBBHIII4x', visual_id, visual_class, bits_per_rgb,
                colourmap_entries, *masks)


def build_depth(depth=24, visuals=()):

    body = struct.pack('<BxH4x', depth, len(visuals))
    return body + b''.join(visuals)


def build_screen(root=0x00000100, depths=(), root_visual=0x21,
        backing_stores=0, save_unders=0, input_masks=0):

    body = struct.pack('<IIIIIHHHHHHIBBBB',
                root,           # root window
                0x20,           # default colormap
                0x00ffffff,     # white pixel
                0x00000000,     # black pixel
                input_masks,
                1920, 1080,     # pixels
                508, 285,       # millimetres
                1, 1,           # installed maps
                root_visual,
                backing_stores,
                save_unders,
                24,             # root depth
                len(depths))

    return body + b''.join(depths)


def build_setup_reply(screens=None, formats=(), vendor=b'The X.Org Foundation',
        image_byte_order=0, bitmap_bit_order=0, maximum_request_length=0xffff,
        base=RESOURCE_ID_BASE, mask=RESOURCE_ID_MASK, extra=b''):
    """ Assemble a successful setup reply, the way a server would send it.
        The additional-data length in the header is computed from what is
        actually appended, unless *extra* is used to tack on junk.
    """

    if screens is None:
        visual = build_visual()
        screens = (build_screen(depths=(build_depth(visuals=(visual,)),)),)

    body = struct.pack('<IIIIHHBBBBBBBB4x',
                12101004,       # release number
                base,
                mask,
                256,            # motion buffer size
                len(vendor),
                maximum_request_length,
                len(screens),
                len(formats),
                image_byte_order,
                bitmap_bit_order,
                32, 32,         # scanline unit and pad
                8, 255)         # keycodes

    body += vendor + bytes(pad(len(vendor)))

    for depth, bpp, scanline_pad in formats:
        body += struct.pack('<BBB5x', depth, bpp, scanline_pad)

    body += b''.join(screens)

    header = struct.pack('<BxHHH', 1, 11, 0, len(body) // 4)
    return header + body + extra


@pytest.fixture
def setup_reply():
    """ Builder for synthetic setup replies; call it with keyword overrides.
    """

    return build_setup_reply


@pytest.fixture
def setup_parts():
    """ The pieces a setup reply is made of, for tests that need odd shapes.
    """

    class Parts:
        visual = staticmethod(build_visual)
        depth = staticmethod(build_depth)
        screen = staticmethod(build_screen)

    return Parts


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
