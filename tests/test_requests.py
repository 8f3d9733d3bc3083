import struct
import pytest
import xwire


def new_ids():
    return xwire.IdGenerator(0x00200000, 0x001FFFFF)


def header(buf):
    """ Return the (opcode, data byte, length in words) request header.
    """

    return struct.unpack_from('<BBH', buf, 0)


def test_create_window():

    buf = bytearray()
    ids = new_ids()
    attrs = (
        (xwire.WINATTR.EVENTMASK, xwire.EVENTMASK.make_mask((xwire.EVENTMASK.EXPOSURE, xwire.EVENTMASK.KEY_PRESS))),
        (xwire.WINATTR.BACKPIXEL, 0x00ffffff),
    )

    wid = xwire.encode_create_window(buf, ids, 0x100, 10, -20, 640, 480,
            border_width=1, visual=0x21, depth=24, set_attrs=attrs)

    assert wid == 0x00200001
    assert len(buf) % 4 == 0
    assert header(buf) == (xwire.X.CreateWindow, 24, len(buf) // 4)
    assert header(buf)[2] == 8 + 2

    fields = struct.unpack_from('<IIhhHHHHII', buf, 4)
    assert fields == (wid, 0x100, 10, -20, 640, 480, 1,
            xwire.WINDOW_CLASS.INPUT_OUTPUT, 0x21,
            xwire.WINATTR.BACKPIXEL.mask | xwire.WINATTR.EVENTMASK.mask)

    # Values follow in increasing bit order, whatever order they were given in.
    values = struct.unpack_from('<II', buf, 32)
    assert values == (0x00ffffff, (1 << 15) | 1)


def test_create_window_consumes_an_id():

    ids = new_ids()
    first = xwire.encode_create_window(bytearray(), ids, 0x100, 0, 0, 1, 1)
    second = xwire.encode_create_window(bytearray(), ids, 0x100, 0, 0, 1, 1)

    assert second == first + 1


def test_id_exhausted():

    ids = xwire.IdGenerator(0x00200000, 0)
    buf = bytearray()

    with pytest.raises(xwire.IDExhausted):
        xwire.encode_create_gc(buf, ids, 0x100)


def test_single_id_requests():

    for encode, opcode in (
            (xwire.encode_map_window, xwire.X.MapWindow),
            (xwire.encode_unmap_window, xwire.X.UnmapWindow),
            (xwire.encode_destroy_window, xwire.X.DestroyWindow),
            (xwire.encode_get_window_attributes, xwire.X.GetWindowAttributes),
            (xwire.encode_get_geometry, xwire.X.GetGeometry),
            (xwire.encode_close_font, xwire.X.CloseFont),
            (xwire.encode_free_pixmap, xwire.X.FreePixmap),
            (xwire.encode_free_gc, xwire.X.FreeGC)):

        buf = bytearray()
        encode(buf, 0x00200005)

        assert len(buf) == 8
        assert header(buf) == (opcode, 0, 2)
        assert struct.unpack_from('<I', buf, 4)[0] == 0x00200005


def test_map_window_bytes():

    buf = bytearray()
    xwire.encode_map_window(buf, 0x00200001)

    assert bytes(buf) == bytes([8, 0, 2, 0, 0x01, 0x00, 0x20, 0x00])


def test_requests_append():

    buf = bytearray()
    xwire.encode_map_window(buf, 0x00200001)
    xwire.encode_no_operation(buf)
    xwire.encode_list_extensions(buf)

    assert len(buf) == 16
    assert header(buf[8:]) == (xwire.X.NoOperation, 0, 1)
    assert header(buf[12:]) == (xwire.X.ListExtensions, 0, 1)


def test_configure_window():

    buf = bytearray()
    xwire.encode_configure_window(buf, 0x00200001, {
        xwire.WINCONFIG.HEIGHT: 200,
        xwire.WINCONFIG.X: -5,
    })

    assert header(buf) == (xwire.X.ConfigureWindow, 0, 5)
    window, mask = struct.unpack_from('<IH', buf, 4)
    assert window == 0x00200001
    assert mask == xwire.WINCONFIG.X.mask | xwire.WINCONFIG.HEIGHT.mask
    assert struct.unpack_from('<iI', buf, 12) == (-5, 200)


def test_change_requests():

    buf = bytearray()
    xwire.encode_change_window_attributes(buf, 0x00200001, ((xwire.WINATTR.BORDERPIXEL, 7),))

    assert header(buf) == (xwire.X.ChangeWindowAttributes, 0, 4)
    assert struct.unpack_from('<III', buf, 4) == (0x00200001, xwire.WINATTR.BORDERPIXEL.mask, 7)

    buf = bytearray()
    xwire.encode_change_gc(buf, 0x00200002, ((xwire.GCATTR.FOREGROUND, 1), (xwire.GCATTR.FONT, 0x00200003)))

    assert header(buf) == (xwire.X.ChangeGC, 0, 5)
    assert struct.unpack_from('<IIII', buf, 4) == (
        0x00200002,
        xwire.GCATTR.FOREGROUND.mask | xwire.GCATTR.FONT.mask,
        1,
        0x00200003,
    )


def test_create_gc_and_pixmap():

    ids = new_ids()
    buf = bytearray()

    gc = xwire.encode_create_gc(buf, ids, 0x100, ((xwire.GCATTR.GRAPHICSEXPOSURES, 0),))

    assert header(buf) == (xwire.X.CreateGC, 0, 5)
    assert struct.unpack_from('<IIII', buf, 4) == (gc, 0x100, 1 << 16, 0)

    buf = bytearray()
    pixmap = xwire.encode_create_pixmap(buf, ids, 0x100, 24, 64, 32)

    assert pixmap == gc + 1
    assert header(buf) == (xwire.X.CreatePixmap, 24, 4)
    assert struct.unpack_from('<IIHH', buf, 4) == (pixmap, 0x100, 64, 32)


def test_text_padding():

    for name in ('', 'a', 'ab', 'abc', 'abcd', 'fixed', '-misc-fixed-*'):

        buf = bytearray()
        fid = xwire.encode_open_font(buf, new_ids(), name)

        assert len(buf) % 4 == 0
        assert header(buf) == (xwire.X.OpenFont, 0, 3 + (len(name) + xwire.pad(len(name))) // 4)
        assert struct.unpack_from('<IH', buf, 4) == (fid, len(name))
        assert bytes(buf[12:12 + len(name)]) == name.encode()
        assert bytes(buf[12 + len(name):]) == bytes(xwire.pad(len(name)))

        buf = bytearray()
        xwire.encode_intern_atom(buf, name, only_if_exists=True)

        assert len(buf) % 4 == 0
        assert header(buf) == (xwire.X.InternAtom, 1, 2 + (len(name) + xwire.pad(len(name))) // 4)
        assert struct.unpack_from('<H', buf, 4)[0] == len(name)


def test_list_fonts_and_query_extension():

    buf = bytearray()
    xwire.encode_list_fonts(buf, b'*', max_names=10)

    assert bytes(buf) == struct.pack('<BBHHH', xwire.X.ListFonts, 0, 3, 10, 1) + b'*\0\0\0'

    buf = bytearray()
    xwire.encode_query_extension(buf, 'RENDER')

    assert header(buf) == (xwire.X.QueryExtension, 0, 4)
    assert bytes(buf[8:]) == b'RENDER\0\0'


def test_image_text8():

    buf = bytearray()
    xwire.encode_image_text8(buf, 0x00200001, 0x00200002, 10, 20, 'Hello')

    assert header(buf) == (xwire.X.ImageText8, 5, (16 + 5 + 3) // 4)
    assert struct.unpack_from('<IIhh', buf, 4) == (0x00200001, 0x00200002, 10, 20)
    assert bytes(buf[16:]) == b'Hello\0\0\0'

    with pytest.raises(ValueError):
        xwire.encode_image_text8(bytearray(), 1, 2, 0, 0, 'x' * 256)


def test_poly_text8():

    buf = bytearray()
    xwire.encode_poly_text8(buf, 0x00200001, 0x00200002, 10, 20, 'Hi', delta=3)

    assert header(buf) == (xwire.X.PolyText8, 0, 5)
    assert bytes(buf[16:]) == bytes([2, 3]) + b'Hi'

    # Long strings are split into several items.
    buf = bytearray()
    xwire.encode_poly_text8(buf, 1, 2, 0, 0, 'x' * 300)

    items = bytes(buf[16:])
    assert items[0] == 254
    assert items[2:256] == b'x' * 254
    assert items[256] == 46
    assert items[258:304] == b'x' * 46
    assert len(buf) % 4 == 0

    with pytest.raises(ValueError):
        xwire.encode_poly_text8(bytearray(), 1, 2, 0, 0, 'Hi', delta=128)

    with pytest.raises(ValueError):
        xwire.encode_poly_text8(bytearray(), 1, 2, 0, 0, 'Hi', delta=-129)


def test_clear_and_fill():

    buf = bytearray()
    xwire.encode_clear_area(buf, 0x00200001, 0, 0, 0, 0, exposures=True)

    assert header(buf) == (xwire.X.ClearArea, 1, 4)

    buf = bytearray()
    xwire.encode_poly_fill_rectangle(buf, 0x00200001, 0x00200002, ((0, 0, 10, 10), (-5, 5, 1, 2)))

    assert header(buf) == (xwire.X.PolyFillRectangle, 0, 3 + 4)
    assert struct.unpack_from('<hhHHhhHH', buf, 12) == (0, 0, 10, 10, -5, 5, 1, 2)

    with pytest.raises(TypeError):
        xwire.encode_poly_fill_rectangle(bytearray(), 1, 2, ((0, 0, 10),))


def test_value_list_order():

    values = xwire.ValueList(xwire.GCATTR)
    values.add(xwire.GCATTR.FOREGROUND, 1).add(xwire.GCATTR.BACKGROUND, -1)

    assert len(values) == 2
    assert values.pack() == b'\x01\0\0\0\xff\xff\xff\xff'

    with pytest.raises(ValueError):
        values.add(xwire.GCATTR.FUNCTION, 3)

    with pytest.raises(ValueError):
        values.add(xwire.GCATTR.BACKGROUND, 3)

    with pytest.raises(TypeError):
        values.add(xwire.WINATTR.CURSOR, 3)

    with pytest.raises(ValueError):
        values.add(xwire.GCATTR.LINEWIDTH, 1 << 32)


def test_value_list_passes_through():

    values = xwire.ValueList(xwire.GCATTR).add(xwire.GCATTR.FOREGROUND, 0xff)
    buf = bytearray()
    xwire.encode_change_gc(buf, 0x00200001, values)

    assert struct.unpack_from('<II', buf, 8) == (xwire.GCATTR.FOREGROUND.mask, 0xff)

    with pytest.raises(TypeError):
        xwire.encode_change_window_attributes(bytearray(), 0x00200001, values)


def test_pack_attributes():

    values = xwire.WINATTR.pack_attributes(
        ((xwire.WINATTR.CURSOR, 5),),
        default_attrs=((xwire.WINATTR.CURSOR, 9), (xwire.WINATTR.BACKPIXMAP, 0)))

    assert values.value_mask == xwire.WINATTR.CURSOR.mask | xwire.WINATTR.BACKPIXMAP.mask
    assert values.values == [0, 5]

    with pytest.raises(TypeError):
        xwire.WINATTR.pack_attributes(((xwire.WINATTR.CURSOR, 5), (xwire.WINATTR.CURSOR, 6)))

    with pytest.raises(TypeError):
        xwire.WINATTR.pack_attributes(((xwire.GCATTR.FONT, 5),))


def test_masks():

    assert xwire.EVENTMASK.make_mask((xwire.EVENTMASK.EXPOSURE, xwire.EVENTMASK.STRUCTURE_NOTIFY)) == 0x00028000
    assert xwire.STATE.from_mask(0x0105) == {xwire.STATE.SHIFT, xwire.STATE.CTRL, xwire.STATE.BUTTON1}
    assert xwire.EVENTMASK_ALL == 0x01ffffff


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
