"""Client side of the X11 core wire protocol, spoken directly over a
local stream socket under asyncio: connection setup, resource-ID
allocation, request encoding, and demultiplexing of the inbound stream
into replies, errors and events.
"""
#+
# Copyright 2026 the xwire contributors.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

# Protocol reference:
# <https://www.x.org/releases/X11R7.7/doc/xproto/x11protocol.html>

import enum
import struct
import logging
import asyncio
from collections import \
    deque, \
    namedtuple
from weakref import \
    ref as weak_ref

_logger = logging.getLogger(__name__)

#+
# Useful stuff
#-

def pad(n) :
    "returns the number of bytes needed to round n up to a multiple of 4."
    return \
        (4 - n % 4) % 4
#end pad

def _to_bytes(s, what) :
    if isinstance(s, str) :
        s = s.encode("latin-1")
    elif not isinstance(s, (bytes, bytearray)) :
        raise TypeError("%s must be str or bytes" % what)
    #end if
    return \
        bytes(s)
#end _to_bytes

#+
# Exceptions
#-

class XWireError(Exception) :
    "base class for all errors raised by this module."
    pass
#end XWireError

class ConnectionRefused(XWireError) :
    "the server answered the connection setup with status Failed."

    def __init__(self, reason, major_version = None, minor_version = None) :
        super().__init__("X server refused connection: %s" % reason)
        self.reason = reason
        self.major_version = major_version
        self.minor_version = minor_version
    #end __init__

#end ConnectionRefused

class AuthenticationRequired(XWireError) :
    "the server wants a further authentication exchange, which is not supported."

    def __init__(self, reason) :
        super().__init__("X server requires authentication: %s" % reason)
        self.reason = reason
    #end __init__

#end AuthenticationRequired

class ConnectionClosed(XWireError) :
    "the socket failed or was closed."
    pass
#end ConnectionClosed

class DecodeError(XWireError) :
    "the server sent data that is malformed or has out-of-range values."
    pass
#end DecodeError

class DesyncError(XWireError) :
    "the inbound stream can no longer be split into frames reliably."
    pass
#end DesyncError

class CorrelationError(XWireError) :
    "a reply could not be matched to exactly one waiting request."
    pass
#end CorrelationError

class NotImplementedFrame(XWireError) :
    "the server sent a well-formed message this module does not know how to decode."

    def __init__(self, what) :
        super().__init__("not implemented: %s" % what)
        self.what = what
    #end __init__

#end NotImplementedFrame

class IDExhausted(XWireError) :
    "no more resource IDs can be allocated on this connection."
    pass
#end IDExhausted

class XErrorReply(XWireError) :
    "raised from the Future of a request that the server answered with an" \
    " Error instead of a reply. The decoded error is in the error attribute."

    def __init__(self, error) :
        super().__init__(str(error))
        self.error = error
    #end __init__

#end XErrorReply

#+
# X11 protocol definitions
#-

XID = int
  # ID codes used for identifying objects created in the server
  # connection; codes are assigned by client.

COPY_FROM_PARENT = 0
FRAME_SIZE = 32 # minimum size of every error, reply and event
BYTE_ORDER_LSB_FIRST = 0x6c # "l"
PROTOCOL_MAJOR_VERSION = 11
PROTOCOL_MINOR_VERSION = 0

class X :
    "message type and request codes, taken from /usr/include/X11/Xproto.h."

    # first byte of each inbound frame
    Error = 0
    Reply = 1

    # X11 request codes
    CreateWindow = 1
    ChangeWindowAttributes = 2
    GetWindowAttributes = 3
    DestroyWindow = 4
    MapWindow = 8
    UnmapWindow = 10
    ConfigureWindow = 12
    GetGeometry = 14
    InternAtom = 16
    OpenFont = 45
    CloseFont = 46
    ListFonts = 49
    CreatePixmap = 53
    FreePixmap = 54
    CreateGC = 55
    ChangeGC = 56
    FreeGC = 60
    ClearArea = 61
    PolyFillRectangle = 70
    PolyText8 = 74
    ImageText8 = 76
    QueryExtension = 98
    ListExtensions = 99
    NoOperation = 127

#end X

class EVENT(enum.IntEnum) :
    "X11 event codes, starting from 2 to avoid confusion with reply codes."
    KeyPress = 2
    KeyRelease = 3
    ButtonPress = 4
    ButtonRelease = 5
    MotionNotify = 6
    EnterNotify = 7
    LeaveNotify = 8
    FocusIn = 9
    FocusOut = 10
    KeymapNotify = 11
    Expose = 12
    GraphicsExpose = 13
    NoExpose = 14
    VisibilityNotify = 15
    CreateNotify = 16
    DestroyNotify = 17
    UnmapNotify = 18
    MapNotify = 19
    MapRequest = 20
    ReparentNotify = 21
    ConfigureNotify = 22
    ConfigureRequest = 23
    GravityNotify = 24
    ResizeRequest = 25
    CirculateNotify = 26
    CirculateRequest = 27
    PropertyNotify = 28
    SelectionClear = 29
    SelectionRequest = 30
    SelectionNotify = 31
    ColormapNotify = 32
    ClientMessage = 33
    MappingNotify = 34
#end EVENT

SYNTHETIC_EVENT = 0x80 # set in event code if sent with SendEvent

class ERRORKIND(enum.IntEnum) :
    "core protocol error codes."
    Request = 1
    Value = 2
    Window = 3
    Pixmap = 4
    Atom = 5
    Cursor = 6
    Font = 7
    Match = 8
    Drawable = 9
    Access = 10
    Alloc = 11
    Colormap = 12
    GContext = 13
    IDChoice = 14
    Name = 15
    Length = 16
    Implementation = 17
#end ERRORKIND

RESOURCE_ERRORS = frozenset \
  ( # errors whose 4-byte field is the offending resource ID
    (
        ERRORKIND.Window,
        ERRORKIND.Pixmap,
        ERRORKIND.Atom,
        ERRORKIND.Cursor,
        ERRORKIND.Font,
        ERRORKIND.Drawable,
        ERRORKIND.Colormap,
        ERRORKIND.GContext,
        ERRORKIND.IDChoice,
    )
  )

class SETUP_STATUS(enum.IntEnum) :
    FAILED = 0
    SUCCESS = 1
    AUTHENTICATE = 2
#end SETUP_STATUS

class BYTE_ORDER(enum.IntEnum) :
    "image byte order."
    LSB_FIRST = 0
    MSB_FIRST = 1
#end BYTE_ORDER

class BIT_ORDER(enum.IntEnum) :
    "bitmap format bit order."
    LEAST_SIGNIFICANT = 0
    MOST_SIGNIFICANT = 1
#end BIT_ORDER

class BACKING_STORE(enum.IntEnum) :
    NEVER = 0
    WHEN_MAPPED = 1
    ALWAYS = 2
#end BACKING_STORE

class VISUAL_CLASS(enum.IntEnum) :
    STATIC_GRAY = 0
    GRAY_SCALE = 1
    STATIC_COLOR = 2
    PSEUDO_COLOR = 3
    TRUE_COLOR = 4
    DIRECT_COLOR = 5
#end VISUAL_CLASS

class WINDOW_CLASS(enum.IntEnum) :
    COPY_FROM_PARENT = 0
    INPUT_OUTPUT = 1
    INPUT_ONLY = 2
#end WINDOW_CLASS

class MAP_STATE(enum.IntEnum) :
    UNMAPPED = 0
    UNVIEWABLE = 1
    VIEWABLE = 2
#end MAP_STATE

class CROSSING_MODE(enum.IntEnum) :
    "mode field of EnterNotify/LeaveNotify events."
    NORMAL = 0
    GRAB = 1
    UNGRAB = 2
#end CROSSING_MODE

class MAPPING(enum.IntEnum) :
    "request field of MappingNotify events."
    MODIFIER = 0
    KEYBOARD = 1
    POINTER = 2
#end MAPPING

class MSG(enum.Enum) :
    "the three disjoint kinds of inbound message."
    ERROR = 0
    REPLY = 1
    EVENT = 2
#end MSG

def _enum_value(celf, value, what) :
    # converts a decoded wire value to a member of the enum class celf,
    # treating out-of-range values as bad server data.
    try :
        result = celf(value)
    except ValueError :
        raise DecodeError("bad %s value %d" % (what, value)) from None
    #end try
    return \
        result
#end _enum_value

def _bool_value(value, what) :
    if value not in (0, 1) :
        raise DecodeError("%s must be 0 or 1, but is %d" % (what, value))
    #end if
    return \
        value != 0
#end _bool_value

#+
# Bit-numbered attribute lists
#-

class MaskAttr(enum.IntEnum) :
    "Base class for various X11 data which is passed as a bitmask" \
    " indicating which values are present, followed by a list of" \
    " those (integer) values in order of increasing bit number. I" \
    " define a more convenient form, where you pass a sequence of" \
    " pairs, each element of which is a bit number followed by the" \
    " corresponding value, allowing the bit numbers to be in any" \
    " order, the values being automatically sorted into the right" \
    " order as the bit mask is generated from the bit numbers by" \
    " calling the pack_attributes method."

    @property
    def mask(self) :
        "the mask for this bit number."
        return 1 << self.value
    #end mask

    @classmethod
    def pack_attributes(celf, attrs, default_attrs = None) :
        "converts attributes from my sequence/dict-of-key+value form" \
        " to a ValueList holding the mask+ordered-value-list form that" \
        " X11 expects. If not None, default_attrs is used to fill in" \
        " defaults not specified in attrs. A ValueList already built" \
        " for this class is returned unchanged."
        if isinstance(attrs, ValueList) :
            if attrs.attr_type is not celf :
                raise TypeError("ValueList is for %s, not %s" % (attrs.attr_type.__name__, celf.__name__))
            #end if
            if default_attrs != None :
                raise TypeError("cannot apply default_attrs to an already-built ValueList")
            #end if
            return \
                attrs
        #end if
        if isinstance(attrs, dict) :
            attrs = tuple(attrs.items())
        #end if
        if isinstance(default_attrs, dict) :
            default_attrs = tuple(default_attrs.items())
        #end if
        if (
                not all
                  (
                        isinstance(a, (tuple, list))
                    and
                        all
                          (
                                len(i) == 2
                            and
                                isinstance(i[0], celf)
                            and
                                isinstance(i[1], int)
                            for i in a
                          )
                    for a in (attrs,) + ((), (default_attrs,))[default_attrs != None]
                  )
            or
                len(set(i[0] for i in attrs)) != len(attrs)
        ) :
            raise TypeError \
              (
                    "attributes are not unique-keyed sequence of (%s.xxx, value) pairs"
                %
                    celf.__name__
              )
        #end if
        attrs = tuple(attrs)
        if default_attrs != None :
            specified = set(i[0] for i in attrs)
            attrs += tuple(i for i in default_attrs if i[0] not in specified)
        #end if
        result = ValueList(celf)
        for bit_nr, value in sorted(attrs, key = lambda x : x[0]) :
            result.add(bit_nr, value)
        #end for
        return \
            result
    #end pack_attributes

    @classmethod
    def make_mask(celf, attrs) :
        "constructs a mask from the attribute bits in attrs."
        value_mask = 0
        for a in attrs :
            if not isinstance(a, celf) :
                raise TypeError("elements of attrs are not %s" % celf.__name__)
            #end if
            value_mask |= a.mask
        #end for
        return \
            value_mask
    #end make_mask

    @classmethod
    def from_mask(celf, value_mask) :
        "returns the set of my members whose bits are set in value_mask."
        return \
            set(a for a in celf if value_mask & a.mask != 0)
    #end from_mask

#end MaskAttr

class ValueList :
    "accumulates the bitmask and value list for one bit-numbered attribute" \
    " request argument. Values must be added in strictly increasing bit" \
    " order, since that is the order the server requires them in; adding" \
    " one out of order raises ValueError. Use MaskAttr.pack_attributes if" \
    " you would rather have them sorted for you."

    __slots__ = \
        (
            "attr_type",
            "value_mask",
            "values",
            "_last",
        ) # to forestall typos

    def __init__(self, attr_type) :
        if not (isinstance(attr_type, type) and issubclass(attr_type, MaskAttr)) :
            raise TypeError("attr_type must be a MaskAttr subclass")
        #end if
        self.attr_type = attr_type
        self.value_mask = 0
        self.values = []
        self._last = None
    #end __init__

    def add(self, attr, value) :
        "appends the value for attribute attr, which must have a higher bit" \
        " number than any already added. Returns self so calls can be chained."
        if not isinstance(attr, self.attr_type) :
            raise TypeError("attr must be a %s" % self.attr_type.__name__)
        #end if
        if not isinstance(value, int) :
            raise TypeError("value for %s must be an int" % attr.name)
        #end if
        if not -0x80000000 <= value <= 0xffffffff :
            raise ValueError("value %d for %s out of range" % (value, attr.name))
        #end if
        if self._last != None and attr <= self._last :
            raise ValueError \
              (
                "%s added after %s: values must be in increasing bit order" % (attr.name, self._last.name)
              )
        #end if
        self.value_mask |= attr.mask
        self.values.append(value)
        self._last = attr
        return \
            self
    #end add

    def __len__(self) :
        return \
            len(self.values)
    #end __len__

    def pack(self) :
        "returns the encoded value list, 4 bytes per value."
        return \
            struct.pack("<%dI" % len(self.values), *(v & 0xffffffff for v in self.values))
    #end pack

#end ValueList

class WINATTR(MaskAttr) :
    "bit numbers corresponding to bit masks for window attributes to" \
    " create_window calls."
    BACKPIXMAP = 0
    BACKPIXEL = 1
    BORDERPIXMAP = 2
    BORDERPIXEL = 3
    BITGRAVITY = 4
    WINGRAVITY = 5
    BACKINGSTORE = 6
    BACKINGPLANES = 7
    BACKINGPIXEL = 8
    OVERRIDEREDIRECT = 9
    SAVEUNDER = 10
    EVENTMASK = 11
    DONTPROPAGATE = 12
    COLOURMAP = 13
    CURSOR = 14
#end WINATTR

class GCATTR(MaskAttr) :
    "bit numbers corresponding to bit masks for GC attributes to" \
    " create_gc calls."
    FUNCTION = 0
    PLANEMASK = 1
    FOREGROUND = 2
    BACKGROUND = 3
    LINEWIDTH = 4
    LINESTYLE = 5
    CAPSTYLE = 6
    JOINSTYLE = 7
    FILLSTYLE = 8
    FILLRULE = 9
    TILE = 10
    STIPPLE = 11
    TILESTIPXORIGIN = 12
    TILESTIPYORIGIN = 13
    FONT = 14
    SUBWINDOWMODE = 15
    GRAPHICSEXPOSURES = 16
    CLIPXORIGIN = 17
    CLIPYORIGIN = 18
    CLIPMASK = 19
    DASHOFFSET = 20
    DASHLIST = 21
    ARCMODE = 22
#end GCATTR

class WINCONFIG(MaskAttr) :
    "bit numbers corresponding to bit masks for attributes to" \
    " ConfigureWindow call."
    X = 0
    Y = 1
    WIDTH = 2
    HEIGHT = 3
    BORDERWIDTH = 4
    SIBLING = 5
    STACKMODE = 6
#end WINCONFIG

class EVENTMASK(MaskAttr) :
    "bit numbers for event-selection masks."
    KEY_PRESS = 0
    KEY_RELEASE = 1
    BUTTON_PRESS = 2
    BUTTON_RELEASE = 3
    ENTER_WINDOW = 4
    LEAVE_WINDOW = 5
    POINTER_MOTION = 6
    POINTER_MOTION_HINT = 7
    BUTTON1_MOTION = 8
    BUTTON2_MOTION = 9
    BUTTON3_MOTION = 10
    BUTTON4_MOTION = 11
    BUTTON5_MOTION = 12
    BUTTON_MOTION = 13
    KEYMAP_STATE = 14
    EXPOSURE = 15
    VISIBILITY_CHANGE = 16
    STRUCTURE_NOTIFY = 17
    RESIZE_REDIRECT = 18
    SUBSTRUCTURE_NOTIFY = 19
    SUBSTRUCTURE_REDIRECT = 20
    FOCUS_CHANGE = 21
    PROPERTY_CHANGE = 22
    COLOURMAP_CHANGE = 23
    OWNER_GRAB_BUTTON = 24
#end EVENTMASK

EVENTMASK_ALL = EVENTMASK.make_mask(EVENTMASK)

class STATE(MaskAttr) :
    "modifier bits."
    SHIFT = 0
    LOCK = 1
    CTRL = 2
    MOD1 = 3 # PC keyboards: Alt or Meta
    MOD2 = 4 # PC keyboards: Num Lock
    MOD3 = 5
    MOD4 = 6 # Super (PC keyboards: logo key)
    MOD5 = 7
    BUTTON1 = 8
    BUTTON2 = 9
    BUTTON3 = 10
    BUTTON4 = 11
    BUTTON5 = 12
#end STATE

#+
# Decoding
#-

class WireReader :
    "sequential little-endian decoder over a byte buffer. Every get" \
    " checks there are enough bytes left and raises DecodeError if not," \
    " so a truncated message can never be silently misread."

    __slots__ = \
        (
            "data",
            "pos",
            "what",
        ) # to forestall typos

    _formats = dict \
      (
        (code, struct.Struct("<" + code))
        for code in ("B", "b", "H", "h", "I", "i")
      )

    def __init__(self, data, what = "message") :
        self.data = bytes(data)
        self.pos = 0
        self.what = what
    #end __init__

    def remaining(self) :
        return \
            len(self.data) - self.pos
    #end remaining

    def _need(self, nr_bytes) :
        if self.remaining() < nr_bytes :
            raise DecodeError \
              (
                    "%s truncated: need %d bytes at offset %d, only %d left"
                %
                    (self.what, nr_bytes, self.pos, self.remaining())
              )
        #end if
    #end _need

    def _get(self, code) :
        fmt = self._formats[code]
        self._need(fmt.size)
        result = fmt.unpack_from(self.data, self.pos)[0]
        self.pos += fmt.size
        return \
            result
    #end _get

    def card8(self) :
        return \
            self._get("B")
    #end card8

    def int8(self) :
        return \
            self._get("b")
    #end int8

    def card16(self) :
        return \
            self._get("H")
    #end card16

    def int16(self) :
        return \
            self._get("h")
    #end int16

    def card32(self) :
        return \
            self._get("I")
    #end card32

    def int32(self) :
        return \
            self._get("i")
    #end int32

    def get_bytes(self, nr_bytes) :
        self._need(nr_bytes)
        result = self.data[self.pos : self.pos + nr_bytes]
        self.pos += nr_bytes
        return \
            result
    #end get_bytes

    def string(self, nr_bytes) :
        "decodes a STRING8 of the given length."
        return \
            self.get_bytes(nr_bytes).decode("latin-1")
    #end string

    def skip(self, nr_bytes) :
        "consumes unused or uninteresting bytes."
        self._need(nr_bytes)
        self.pos += nr_bytes
    #end skip

    def finish(self) :
        "checks that the whole buffer has been consumed."
        if self.remaining() != 0 :
            raise DecodeError \
              (
                "%s has %d unexpected trailing bytes" % (self.what, self.remaining())
              )
        #end if
    #end finish

#end WireReader

#+
# Connection setup
#-

PixelFormat = namedtuple("PixelFormat", ("depth", "bits_per_pixel", "scanline_pad"))

VisualType = namedtuple \
  (
    "VisualType",
    (
        "visual_id",
        "visual_class",
        "bits_per_rgb_value",
        "colourmap_entries",
        "red_mask",
        "green_mask",
        "blue_mask",
    )
  )

Depth = namedtuple("Depth", ("depth", "visuals"))

class Screen(namedtuple \
  (
    "Screen",
    (
        "root",
        "default_colourmap",
        "white_pixel",
        "black_pixel",
        "current_input_masks",
        "width_pixels",
        "height_pixels",
        "width_mm",
        "height_mm",
        "min_installed_maps",
        "max_installed_maps",
        "root_visual",
        "backing_stores",
        "save_unders",
        "root_depth",
        "allowed_depths",
    )
  )) :
    "one root window and its capabilities, as announced at connection setup."

    __slots__ = ()

    def find_visual(self, visual_id) :
        "returns the VisualType with the specified ID, or None."
        use_visuals = list \
          (
            vis
            for depth in self.allowed_depths
            for vis in depth.visuals
            if vis.visual_id == visual_id
          )
        if len(use_visuals) != 0 :
            result = use_visuals[0]
        else :
            result = None
        #end if
        return \
            result
    #end find_visual

    @property
    def root_visual_type(self) :
        return \
            self.find_visual(self.root_visual)
    #end root_visual_type

    @property
    def input_masks(self) :
        "current_input_masks as a set of EVENTMASK values."
        return \
            EVENTMASK.from_mask(self.current_input_masks)
    #end input_masks

#end Screen

HandshakeInfo = namedtuple \
  (
    "HandshakeInfo",
    (
        "protocol_major_version",
        "protocol_minor_version",
        "release_number",
        "resource_id_base",
        "resource_id_mask",
        "motion_buffer_size",
        "vendor",
        "maximum_request_length",
        "image_byte_order",
        "bitmap_format_bit_order",
        "bitmap_format_scanline_unit",
        "bitmap_format_scanline_pad",
        "min_keycode",
        "max_keycode",
        "pixmap_formats",
        "roots",
    )
  )

def setup_request() :
    "returns the connection-setup request: little-endian byte order," \
    " protocol 11.0, no authorization."
    return \
        struct.pack \
          (
            "<BxHHHHxx",
            BYTE_ORDER_LSB_FIRST,
            PROTOCOL_MAJOR_VERSION,
            PROTOCOL_MINOR_VERSION,
            0, # length of authorization-protocol-name
            0, # length of authorization-protocol-data
          )
#end setup_request

def setup_reply_length(header) :
    "given at least the first 8 bytes of the server’s response to the" \
    " connection-setup request, returns the total number of bytes in" \
    " that response. The caller must keep reading until it has that many."
    if len(header) < 8 :
        raise DecodeError("setup reply header needs 8 bytes, got %d" % len(header))
    #end if
    additional_data_len, = struct.unpack_from("<H", header, 6)
    return \
        8 + 4 * additional_data_len
#end setup_reply_length

def _decode_depth(src) :
    depth = src.card8()
    src.skip(1)
    nr_visuals = src.card16()
    src.skip(4)
    visuals = []
    for i in range(nr_visuals) :
        visual_id = src.card32()
        visual_class = _enum_value(VISUAL_CLASS, src.card8(), "visual class")
        bits_per_rgb_value = src.card8()
        colourmap_entries = src.card16()
        red_mask = src.card32()
        green_mask = src.card32()
        blue_mask = src.card32()
        src.skip(4)
        visuals.append \
          (
            VisualType
              (
                visual_id = visual_id,
                visual_class = visual_class,
                bits_per_rgb_value = bits_per_rgb_value,
                colourmap_entries = colourmap_entries,
                red_mask = red_mask,
                green_mask = green_mask,
                blue_mask = blue_mask
              )
          )
    #end for
    return \
        Depth(depth, tuple(visuals))
#end _decode_depth

def _decode_screen(src) :
    root = src.card32()
    default_colourmap = src.card32()
    white_pixel = src.card32()
    black_pixel = src.card32()
    current_input_masks = src.card32()
    if current_input_masks & ~EVENTMASK_ALL != 0 :
        raise DecodeError("bad current input masks 0x%08x" % current_input_masks)
    #end if
    width_pixels = src.card16()
    height_pixels = src.card16()
    width_mm = src.card16()
    height_mm = src.card16()
    min_installed_maps = src.card16()
    max_installed_maps = src.card16()
    root_visual = src.card32()
    backing_stores = _enum_value(BACKING_STORE, src.card8(), "backing stores")
    save_unders = _bool_value(src.card8(), "save unders")
    root_depth = src.card8()
    nr_depths = src.card8()
    allowed_depths = tuple(_decode_depth(src) for i in range(nr_depths))
    return \
        Screen \
          (
            root = root,
            default_colourmap = default_colourmap,
            white_pixel = white_pixel,
            black_pixel = black_pixel,
            current_input_masks = current_input_masks,
            width_pixels = width_pixels,
            height_pixels = height_pixels,
            width_mm = width_mm,
            height_mm = height_mm,
            min_installed_maps = min_installed_maps,
            max_installed_maps = max_installed_maps,
            root_visual = root_visual,
            backing_stores = backing_stores,
            save_unders = save_unders,
            root_depth = root_depth,
            allowed_depths = allowed_depths
          )
#end _decode_screen

def decode_setup(data) :
    "decodes the complete server response to the connection-setup request" \
    " into a HandshakeInfo. data must be exactly setup_reply_length() bytes." \
    " Raises ConnectionRefused or AuthenticationRequired if the server did" \
    " not accept the connection, DecodeError if the data is malformed."
    src = WireReader(data, "setup reply")
    status = src.card8()
    if status == SETUP_STATUS.FAILED :
        reason_len = src.card8()
        major_version = src.card16()
        minor_version = src.card16()
        src.skip(2) # additional data length
        reason = src.string(reason_len)
        raise ConnectionRefused(reason, major_version, minor_version)
    elif status == SETUP_STATUS.AUTHENTICATE :
        src.skip(5)
        additional_data_len = src.card16()
        reason = src.string(additional_data_len * 4).rstrip("\0")
        raise AuthenticationRequired(reason)
    elif status != SETUP_STATUS.SUCCESS :
        raise DecodeError("unknown setup response status code %d" % status)
    #end if
    src.skip(1)
    protocol_major_version = src.card16()
    protocol_minor_version = src.card16()
    additional_data_len = src.card16()
    if len(data) != 8 + 4 * additional_data_len :
        raise DecodeError \
          (
                "setup reply is %d bytes, but header declares %d"
            %
                (len(data), 8 + 4 * additional_data_len)
          )
    #end if
    release_number = src.card32()
    resource_id_base = src.card32()
    resource_id_mask = src.card32()
    motion_buffer_size = src.card32()
    vendor_len = src.card16()
    maximum_request_length = src.card16()
    nr_screens = src.card8()
    nr_formats = src.card8()
    image_byte_order = _enum_value(BYTE_ORDER, src.card8(), "image byte order")
    bitmap_format_bit_order = _enum_value(BIT_ORDER, src.card8(), "bitmap format bit order")
    bitmap_format_scanline_unit = src.card8()
    bitmap_format_scanline_pad = src.card8()
    min_keycode = src.card8()
    max_keycode = src.card8()
    src.skip(4)
    vendor = src.string(vendor_len)
    src.skip(pad(vendor_len))
    pixmap_formats = []
    for i in range(nr_formats) :
        depth = src.card8()
        bits_per_pixel = src.card8()
        scanline_pad = src.card8()
        src.skip(5)
        pixmap_formats.append(PixelFormat(depth, bits_per_pixel, scanline_pad))
    #end for
    roots = tuple(_decode_screen(src) for i in range(nr_screens))
    src.finish()
    return \
        HandshakeInfo \
          (
            protocol_major_version = protocol_major_version,
            protocol_minor_version = protocol_minor_version,
            release_number = release_number,
            resource_id_base = resource_id_base,
            resource_id_mask = resource_id_mask,
            motion_buffer_size = motion_buffer_size,
            vendor = vendor,
            maximum_request_length = maximum_request_length,
            image_byte_order = image_byte_order,
            bitmap_format_bit_order = bitmap_format_bit_order,
            bitmap_format_scanline_unit = bitmap_format_scanline_unit,
            bitmap_format_scanline_pad = bitmap_format_scanline_pad,
            min_keycode = min_keycode,
            max_keycode = max_keycode,
            pixmap_formats = tuple(pixmap_formats),
            roots = roots
          )
#end decode_setup

#+
# Resource IDs
#-

class IdGenerator :
    "hands out resource IDs from the base/mask pair given by the server" \
    " at connection setup. Each ID sets only bits within the mask on top" \
    " of the base; next() returns None once the mask range is used up," \
    " and keeps returning None thereafter."

    __slots__ = \
        (
            "base",
            "max",
            "inc",
            "last",
        ) # to forestall typos

    def __init__(self, base, mask) :
        if base & mask != 0 :
            raise ValueError("resource ID base 0x%08x overlaps mask 0x%08x" % (base, mask))
        #end if
        if (mask + (mask & -mask)) & mask != 0 :
            raise ValueError("resource ID mask 0x%08x is not a contiguous run of bits" % mask)
        #end if
        self.base = base
        self.max = mask
        self.inc = mask & -mask # lowest set bit
        self.last = 0
    #end __init__

    @property
    def exhausted(self) :
        return \
            self.inc == 0 or self.last + self.inc > self.max
    #end exhausted

    def next(self) :
        "returns the next unused ID, or None if there are none left."
        if self.exhausted :
            result = None
        else :
            self.last += self.inc
            result = self.last | self.base
        #end if
        return \
            result
    #end next

#end IdGenerator

def _allocate(ids) :
    id = ids.next()
    if id == None :
        raise IDExhausted("resource ID space exhausted")
    #end if
    return \
        id
#end _allocate

#+
# Request encoders
#
# Each appends one complete request to a bytearray, and returns the
# newly-allocated resource ID if the request creates a resource.
#-

def _put_request(buf, opcode, data, body = b"", trailer = b"") :
    # common code for all request encoders: header, fixed body, and
    # variable trailer padded to a 4-byte boundary.
    payload = body + trailer
    payload += bytes(pad(len(payload)))
    nr_words = 1 + len(payload) // 4
    if nr_words > 0xffff :
        raise ValueError("request too long: %d words" % nr_words)
    #end if
    buf += struct.pack("<BBH", opcode, data, nr_words)
    buf += payload
#end _put_request

def encode_create_window \
  (
    buf,
    ids : IdGenerator,
    parent : XID,
    x : int,
    y : int,
    width : int,
    height : int,
    border_width : int = 0,
    window_class = WINDOW_CLASS.INPUT_OUTPUT,
    visual = COPY_FROM_PARENT,
    depth = COPY_FROM_PARENT,
    set_attrs = ()
  ) :
    values = WINATTR.pack_attributes(set_attrs)
    wid = _allocate(ids)
    _put_request \
      (
        buf,
        X.CreateWindow,
        depth,
        struct.pack
          (
            "<IIhhHHHHII",
            wid,
            parent,
            x,
            y,
            width,
            height,
            border_width,
            window_class,
            visual,
            values.value_mask
          )
        +
            values.pack()
      )
    return \
        wid
#end encode_create_window

def encode_change_window_attributes(buf, window : XID, attrs) :
    values = WINATTR.pack_attributes(attrs)
    _put_request \
      (
        buf,
        X.ChangeWindowAttributes,
        0,
        struct.pack("<II", window, values.value_mask) + values.pack()
      )
#end encode_change_window_attributes

def _encode_resource_request(buf, opcode, id) :
    # common layout for requests taking just one resource ID.
    _put_request(buf, opcode, 0, struct.pack("<I", id))
#end _encode_resource_request

def encode_get_window_attributes(buf, window : XID) :
    _encode_resource_request(buf, X.GetWindowAttributes, window)
#end encode_get_window_attributes

def encode_destroy_window(buf, window : XID) :
    _encode_resource_request(buf, X.DestroyWindow, window)
#end encode_destroy_window

def encode_map_window(buf, window : XID) :
    _encode_resource_request(buf, X.MapWindow, window)
#end encode_map_window

def encode_unmap_window(buf, window : XID) :
    _encode_resource_request(buf, X.UnmapWindow, window)
#end encode_unmap_window

def encode_configure_window(buf, window : XID, config_attrs) :
    values = WINCONFIG.pack_attributes(config_attrs)
    _put_request \
      (
        buf,
        X.ConfigureWindow,
        0,
        struct.pack("<IHxx", window, values.value_mask) + values.pack()
      )
#end encode_configure_window

def encode_get_geometry(buf, drawable : XID) :
    _encode_resource_request(buf, X.GetGeometry, drawable)
#end encode_get_geometry

def encode_intern_atom(buf, name, only_if_exists : bool = False) :
    name = _to_bytes(name, "name")
    if len(name) > 0xffff :
        raise ValueError("atom name too long")
    #end if
    _put_request \
      (
        buf,
        X.InternAtom,
        int(only_if_exists),
        struct.pack("<Hxx", len(name)),
        name
      )
#end encode_intern_atom

def encode_open_font(buf, ids : IdGenerator, name) :
    name = _to_bytes(name, "name")
    if len(name) > 0xffff :
        raise ValueError("font name too long")
    #end if
    fid = _allocate(ids)
    _put_request(buf, X.OpenFont, 0, struct.pack("<IHxx", fid, len(name)), name)
    return \
        fid
#end encode_open_font

def encode_close_font(buf, font : XID) :
    _encode_resource_request(buf, X.CloseFont, font)
#end encode_close_font

def encode_list_fonts(buf, pattern, max_names : int = 0xffff) :
    pattern = _to_bytes(pattern, "pattern")
    if len(pattern) > 0xffff :
        raise ValueError("font pattern too long")
    #end if
    _put_request(buf, X.ListFonts, 0, struct.pack("<HH", max_names, len(pattern)), pattern)
#end encode_list_fonts

def encode_create_pixmap(buf, ids : IdGenerator, drawable : XID, depth : int, width : int, height : int) :
    pid = _allocate(ids)
    _put_request(buf, X.CreatePixmap, depth, struct.pack("<IIHH", pid, drawable, width, height))
    return \
        pid
#end encode_create_pixmap

def encode_free_pixmap(buf, pixmap : XID) :
    _encode_resource_request(buf, X.FreePixmap, pixmap)
#end encode_free_pixmap

def encode_create_gc(buf, ids : IdGenerator, drawable : XID, set_attrs = ()) :
    values = GCATTR.pack_attributes(set_attrs)
    cid = _allocate(ids)
    _put_request \
      (
        buf,
        X.CreateGC,
        0,
        struct.pack("<III", cid, drawable, values.value_mask) + values.pack()
      )
    return \
        cid
#end encode_create_gc

def encode_change_gc(buf, gc : XID, attrs) :
    values = GCATTR.pack_attributes(attrs)
    _put_request \
      (
        buf,
        X.ChangeGC,
        0,
        struct.pack("<II", gc, values.value_mask) + values.pack()
      )
#end encode_change_gc

def encode_free_gc(buf, gc : XID) :
    _encode_resource_request(buf, X.FreeGC, gc)
#end encode_free_gc

def encode_clear_area(buf, window : XID, x : int, y : int, width : int, height : int, exposures : bool = False) :
    _put_request \
      (
        buf,
        X.ClearArea,
        int(exposures),
        struct.pack("<IhhHH", window, x, y, width, height)
      )
#end encode_clear_area

def encode_poly_fill_rectangle(buf, drawable : XID, gc : XID, rects) :
    "rects is a sequence of (x, y, width, height) tuples."
    rects = tuple(rects)
    if not all(isinstance(r, (tuple, list)) and len(r) == 4 for r in rects) :
        raise TypeError("rects must be a sequence of (x, y, width, height) tuples")
    #end if
    _put_request \
      (
        buf,
        X.PolyFillRectangle,
        0,
        struct.pack("<II", drawable, gc)
        +
            b"".join(struct.pack("<hhHH", *r) for r in rects)
      )
#end encode_poly_fill_rectangle

def encode_poly_text8(buf, drawable : XID, gc : XID, x : int, y : int, text, delta : int = 0) :
    "draws text with only the foreground pixels of the glyphs. Long text" \
    " is split into items of at most 254 bytes; delta applies before the" \
    " first item only."
    text = _to_bytes(text, "text")
    if not -128 <= delta <= 127 :
        raise ValueError("PolyText8 delta must be in -128 .. 127")
    #end if
    items = b""
    first = True
    while True :
        chunk = text[:254]
        text = text[254:]
        items += struct.pack("<Bb", len(chunk), (0, delta)[first]) + chunk
        first = False
        if len(text) == 0 :
            break
    #end while
    _put_request(buf, X.PolyText8, 0, struct.pack("<IIhh", drawable, gc, x, y), items)
#end encode_poly_text8

def encode_image_text8(buf, drawable : XID, gc : XID, x : int, y : int, text) :
    "draws text with the glyph backgrounds filled in as well."
    text = _to_bytes(text, "text")
    if len(text) > 255 :
        raise ValueError("ImageText8 string is limited to 255 bytes")
    #end if
    _put_request(buf, X.ImageText8, len(text), struct.pack("<IIhh", drawable, gc, x, y), text)
#end encode_image_text8

def encode_query_extension(buf, name) :
    name = _to_bytes(name, "name")
    if len(name) > 0xffff :
        raise ValueError("extension name too long")
    #end if
    _put_request(buf, X.QueryExtension, 0, struct.pack("<Hxx", len(name)), name)
#end encode_query_extension

def encode_list_extensions(buf) :
    _put_request(buf, X.ListExtensions, 0)
#end encode_list_extensions

def encode_no_operation(buf) :
    _put_request(buf, X.NoOperation, 0)
#end encode_no_operation

#+
# Replies
#-

WindowAttributes = namedtuple \
  (
    "WindowAttributes",
    (
        "backing_store",
        "visual",
        "window_class",
        "bit_gravity",
        "win_gravity",
        "backing_planes",
        "backing_pixel",
        "save_under",
        "map_is_installed",
        "map_state",
        "override_redirect",
        "colourmap",
        "all_event_masks",
        "your_event_mask",
        "do_not_propagate_mask",
    )
  )

Geometry = namedtuple("Geometry", ("depth", "root", "x", "y", "width", "height", "border_width"))

ExtensionInfo = namedtuple("ExtensionInfo", ("present", "major_opcode", "first_event", "first_error"))

def _reply_reader(data, what) :
    # skips the common reply header fields, leaving the reader
    # positioned at byte 8. Returns the reader and the data byte.
    src = WireReader(data, what)
    src.skip(1)
    data_byte = src.card8()
    src.skip(6) # sequence number and reply length, already checked
    return \
        src, data_byte
#end _reply_reader

def _decode_str_list(src, nr_strs) :
    # decodes a LISTofSTR followed by padding.
    result = []
    for i in range(nr_strs) :
        result.append(src.string(src.card8()))
    #end for
    if src.remaining() >= 4 :
        raise DecodeError("%s has %d unexpected trailing bytes" % (src.what, src.remaining()))
    #end if
    src.skip(src.remaining())
    return \
        result
#end _decode_str_list

def decode_window_attributes_reply(data) :
    src, backing_store = _reply_reader(data, "GetWindowAttributes reply")
    visual = src.card32()
    window_class = _enum_value(WINDOW_CLASS, src.card16(), "window class")
    bit_gravity = src.card8()
    win_gravity = src.card8()
    backing_planes = src.card32()
    backing_pixel = src.card32()
    save_under = _bool_value(src.card8(), "save under")
    map_is_installed = _bool_value(src.card8(), "map is installed")
    map_state = _enum_value(MAP_STATE, src.card8(), "map state")
    override_redirect = _bool_value(src.card8(), "override redirect")
    colourmap = src.card32()
    all_event_masks = src.card32()
    your_event_mask = src.card32()
    do_not_propagate_mask = src.card16()
    src.skip(2)
    src.finish()
    return \
        WindowAttributes \
          (
            backing_store = _enum_value(BACKING_STORE, backing_store, "backing store"),
            visual = visual,
            window_class = window_class,
            bit_gravity = bit_gravity,
            win_gravity = win_gravity,
            backing_planes = backing_planes,
            backing_pixel = backing_pixel,
            save_under = save_under,
            map_is_installed = map_is_installed,
            map_state = map_state,
            override_redirect = override_redirect,
            colourmap = colourmap,
            all_event_masks = all_event_masks,
            your_event_mask = your_event_mask,
            do_not_propagate_mask = do_not_propagate_mask
          )
#end decode_window_attributes_reply

def decode_geometry_reply(data) :
    src, depth = _reply_reader(data, "GetGeometry reply")
    root = src.card32()
    x = src.int16()
    y = src.int16()
    width = src.card16()
    height = src.card16()
    border_width = src.card16()
    src.skip(10)
    src.finish()
    return \
        Geometry(depth, root, x, y, width, height, border_width)
#end decode_geometry_reply

def decode_intern_atom_reply(data) :
    "returns the atom, or None if it does not exist."
    src, _ = _reply_reader(data, "InternAtom reply")
    atom = src.card32()
    src.skip(20)
    src.finish()
    if atom == 0 :
        atom = None
    #end if
    return \
        atom
#end decode_intern_atom_reply

def decode_list_fonts_reply(data) :
    "returns a list of font name strings."
    src, _ = _reply_reader(data, "ListFonts reply")
    nr_names = src.card16()
    src.skip(22)
    return \
        _decode_str_list(src, nr_names)
#end decode_list_fonts_reply

def decode_query_extension_reply(data) :
    src, _ = _reply_reader(data, "QueryExtension reply")
    present = _bool_value(src.card8(), "extension present")
    major_opcode = src.card8()
    first_event = src.card8()
    first_error = src.card8()
    src.skip(20)
    src.finish()
    return \
        ExtensionInfo(present, major_opcode, first_event, first_error)
#end decode_query_extension_reply

def decode_list_extensions_reply(data) :
    "returns a list of extension name strings."
    src, nr_names = _reply_reader(data, "ListExtensions reply")
    src.skip(24)
    return \
        _decode_str_list(src, nr_names)
#end decode_list_extensions_reply

class ReplyKind :
    "what is known about the reply to one kind of request: reply_words is" \
    " the fixed value of the reply-length field, or None if the reply is" \
    " variable-length, and decode converts the complete reply bytes into" \
    " a result object."

    __slots__ = \
        (
            "opcode",
            "name",
            "reply_words",
            "decode",
        ) # to forestall typos

    def __init__(self, opcode, name, reply_words, decode) :
        self.opcode = opcode
        self.name = name
        self.reply_words = reply_words
        self.decode = decode
    #end __init__

    def __repr__(self) :
        return \
            "ReplyKind(%s)" % self.name
    #end __repr__

#end ReplyKind

REPLY_KINDS = dict \
  ( # opcode => ReplyKind, for all supported requests that have replies
    (k.opcode, k)
    for k in
        (
            ReplyKind(X.GetWindowAttributes, "GetWindowAttributes", 3, decode_window_attributes_reply),
            ReplyKind(X.GetGeometry, "GetGeometry", 0, decode_geometry_reply),
            ReplyKind(X.InternAtom, "InternAtom", 0, decode_intern_atom_reply),
            ReplyKind(X.ListFonts, "ListFonts", None, decode_list_fonts_reply),
            ReplyKind(X.QueryExtension, "QueryExtension", 0, decode_query_extension_reply),
            ReplyKind(X.ListExtensions, "ListExtensions", None, decode_list_extensions_reply),
        )
  )

#+
# Errors
#-

class XError(namedtuple \
  (
    "XError",
    (
        "kind",
        "sequence",
        "bad_resource_id",
        "bad_value",
        "minor_opcode",
        "major_opcode",
    )
  )) :
    "a decoded Error message from the server. bad_resource_id is only set" \
    " for errors that report a resource ID, bad_value only for Value errors."

    __slots__ = ()

    def __str__(self) :
        if self.bad_resource_id != None :
            extra = ", bad resource 0x%08x" % self.bad_resource_id
        elif self.bad_value != None :
            extra = ", bad value %d" % self.bad_value
        else :
            extra = ""
        #end if
        return \
            (
                    "X11 %s error for request %d (opcode %d.%d)%s"
                %
                    (self.kind.name, self.sequence, self.major_opcode, self.minor_opcode, extra)
            )
    #end __str__

#end XError

def decode_error(frame) :
    "decodes a 32-byte Error frame."
    src = WireReader(frame, "error")
    if src.card8() != X.Error :
        raise DecodeError("not an error frame")
    #end if
    kind = _enum_value(ERRORKIND, src.card8(), "error code")
    sequence = src.card16()
    field = src.card32()
    minor_opcode = src.card16()
    major_opcode = src.card8()
    src.skip(21)
    src.finish()
    return \
        XError \
          (
            kind = kind,
            sequence = sequence,
            bad_resource_id = (lambda : None, lambda : field)[kind in RESOURCE_ERRORS](),
            bad_value = (lambda : None, lambda : field)[kind == ERRORKIND.Value](),
            minor_opcode = minor_opcode,
            major_opcode = major_opcode
          )
#end decode_error

#+
# Events
#-

class InputEvent(namedtuple \
  (
    "InputEvent",
    (
        "kind",
        "sequence",
        "synthetic",
        "detail",
        "time",
        "root",
        "event",
        "child",
        "root_x",
        "root_y",
        "event_x",
        "event_y",
        "state",
        "same_screen",
    )
  )) :
    "KeyPress, KeyRelease, ButtonPress, ButtonRelease or MotionNotify." \
    " detail is the keycode, button number or motion hint respectively."

    __slots__ = ()

    @property
    def modifiers(self) :
        "state as a set of STATE values."
        return \
            STATE.from_mask(self.state)
    #end modifiers

#end InputEvent

CrossingEvent = namedtuple \
  (
    "CrossingEvent",
    (
        "kind",
        "sequence",
        "synthetic",
        "detail",
        "time",
        "root",
        "event",
        "child",
        "root_x",
        "root_y",
        "event_x",
        "event_y",
        "state",
        "mode",
        "same_screen",
        "focus",
    )
  )

ExposeEvent = namedtuple \
  (
    "ExposeEvent",
    ("kind", "sequence", "synthetic", "window", "x", "y", "width", "height", "count")
  )

MappingNotifyEvent = namedtuple \
  (
    "MappingNotifyEvent",
    ("kind", "sequence", "synthetic", "request", "first_keycode", "count")
  )

DestroyNotifyEvent = namedtuple \
  (
    "DestroyNotifyEvent",
    ("kind", "sequence", "synthetic", "event", "window")
  )

UnmapNotifyEvent = namedtuple \
  (
    "UnmapNotifyEvent",
    ("kind", "sequence", "synthetic", "event", "window", "from_configure")
  )

MapNotifyEvent = namedtuple \
  (
    "MapNotifyEvent",
    ("kind", "sequence", "synthetic", "event", "window", "override_redirect")
  )

ConfigureNotifyEvent = namedtuple \
  (
    "ConfigureNotifyEvent",
    (
        "kind",
        "sequence",
        "synthetic",
        "event",
        "window",
        "above_sibling",
        "x",
        "y",
        "width",
        "height",
        "border_width",
        "override_redirect",
    )
  )

def _event_reader(frame, kind) :
    # common start of all event decoders: skips the code byte, returns
    # the reader positioned at byte 1.
    src = WireReader(frame, "%s event" % kind.name)
    src.skip(1)
    return \
        src
#end _event_reader

def _decode_input_event(frame, kind, synthetic) :
    src = _event_reader(frame, kind)
    detail = src.card8()
    sequence = src.card16()
    time = src.card32()
    root = src.card32()
    event = src.card32()
    child = src.card32()
    root_x = src.int16()
    root_y = src.int16()
    event_x = src.int16()
    event_y = src.int16()
    state = src.card16()
    same_screen = _bool_value(src.card8(), "same screen")
    src.skip(1)
    src.finish()
    return \
        InputEvent \
          (
            kind = kind,
            sequence = sequence,
            synthetic = synthetic,
            detail = detail,
            time = time,
            root = root,
            event = event,
            child = child,
            root_x = root_x,
            root_y = root_y,
            event_x = event_x,
            event_y = event_y,
            state = state,
            same_screen = same_screen
          )
#end _decode_input_event

def _decode_crossing_event(frame, kind, synthetic) :
    src = _event_reader(frame, kind)
    detail = src.card8()
    sequence = src.card16()
    time = src.card32()
    root = src.card32()
    event = src.card32()
    child = src.card32()
    root_x = src.int16()
    root_y = src.int16()
    event_x = src.int16()
    event_y = src.int16()
    state = src.card16()
    mode = _enum_value(CROSSING_MODE, src.card8(), "crossing mode")
    flags = src.card8()
    src.finish()
    return \
        CrossingEvent \
          (
            kind = kind,
            sequence = sequence,
            synthetic = synthetic,
            detail = detail,
            time = time,
            root = root,
            event = event,
            child = child,
            root_x = root_x,
            root_y = root_y,
            event_x = event_x,
            event_y = event_y,
            state = state,
            mode = mode,
            same_screen = flags & 2 != 0,
            focus = flags & 1 != 0
          )
#end _decode_crossing_event

def _decode_expose_event(frame, kind, synthetic) :
    src = _event_reader(frame, kind)
    src.skip(1)
    sequence = src.card16()
    window = src.card32()
    x = src.card16()
    y = src.card16()
    width = src.card16()
    height = src.card16()
    count = src.card16()
    src.skip(14)
    src.finish()
    return \
        ExposeEvent(kind, sequence, synthetic, window, x, y, width, height, count)
#end _decode_expose_event

def _decode_mapping_notify_event(frame, kind, synthetic) :
    src = _event_reader(frame, kind)
    src.skip(1)
    sequence = src.card16()
    request = _enum_value(MAPPING, src.card8(), "mapping request")
    first_keycode = src.card8()
    count = src.card8()
    src.skip(25)
    src.finish()
    return \
        MappingNotifyEvent(kind, sequence, synthetic, request, first_keycode, count)
#end _decode_mapping_notify_event

def _decode_destroy_notify_event(frame, kind, synthetic) :
    src = _event_reader(frame, kind)
    src.skip(1)
    sequence = src.card16()
    event = src.card32()
    window = src.card32()
    src.skip(20)
    src.finish()
    return \
        DestroyNotifyEvent(kind, sequence, synthetic, event, window)
#end _decode_destroy_notify_event

def _decode_map_unmap_notify_event(frame, kind, synthetic) :
    src = _event_reader(frame, kind)
    src.skip(1)
    sequence = src.card16()
    event = src.card32()
    window = src.card32()
    flag = _bool_value(src.card8(), "%s flag" % kind.name)
    src.skip(19)
    src.finish()
    return \
        {EVENT.MapNotify : MapNotifyEvent, EVENT.UnmapNotify : UnmapNotifyEvent}[kind] \
            (kind, sequence, synthetic, event, window, flag)
#end _decode_map_unmap_notify_event

def _decode_configure_notify_event(frame, kind, synthetic) :
    src = _event_reader(frame, kind)
    src.skip(1)
    sequence = src.card16()
    event = src.card32()
    window = src.card32()
    above_sibling = src.card32()
    x = src.int16()
    y = src.int16()
    width = src.card16()
    height = src.card16()
    border_width = src.card16()
    override_redirect = _bool_value(src.card8(), "override redirect")
    src.skip(5)
    src.finish()
    return \
        ConfigureNotifyEvent \
          (
            kind = kind,
            sequence = sequence,
            synthetic = synthetic,
            event = event,
            window = window,
            above_sibling = above_sibling,
            x = x,
            y = y,
            width = width,
            height = height,
            border_width = border_width,
            override_redirect = override_redirect
          )
#end _decode_configure_notify_event

_EVENT_DECODERS = \
    {
        EVENT.KeyPress : _decode_input_event,
        EVENT.KeyRelease : _decode_input_event,
        EVENT.ButtonPress : _decode_input_event,
        EVENT.ButtonRelease : _decode_input_event,
        EVENT.MotionNotify : _decode_input_event,
        EVENT.EnterNotify : _decode_crossing_event,
        EVENT.LeaveNotify : _decode_crossing_event,
        EVENT.Expose : _decode_expose_event,
        EVENT.DestroyNotify : _decode_destroy_notify_event,
        EVENT.UnmapNotify : _decode_map_unmap_notify_event,
        EVENT.MapNotify : _decode_map_unmap_notify_event,
        EVENT.ConfigureNotify : _decode_configure_notify_event,
        EVENT.MappingNotify : _decode_mapping_notify_event,
    }

def decode_event(frame) :
    "decodes a 32-byte event frame. Raises NotImplementedFrame for event" \
    " kinds that are valid but not decoded here."
    code = frame[0]
    synthetic = code & SYNTHETIC_EVENT != 0
    code &= ~SYNTHETIC_EVENT
    kind = _enum_value(EVENT, code, "event code")
    decoder = _EVENT_DECODERS.get(kind)
    if decoder == None :
        raise NotImplementedFrame("decoding of %s events" % kind.name)
    #end if
    return \
        decoder(frame, kind, synthetic)
#end decode_event

#+
# Reply correlation
#-

class PendingRequest :
    "a request awaiting its reply. future is completed exactly once," \
    " either with the decoded reply or with an exception."

    __slots__ = \
        (
            "kind",
            "sequence",
            "future",
        ) # to forestall typos

    def __init__(self, kind, sequence, future) :
        self.kind = kind
        self.sequence = sequence
        self.future = future
    #end __init__

    def _check_undelivered(self) :
        if self.future.done() and not self.future.cancelled() :
            raise CorrelationError \
              (
                "second completion for %s request %d" % (self.kind.name, self.sequence)
              )
        #end if
    #end _check_undelivered

    def deliver(self, data) :
        "decodes the complete reply bytes and completes the future with the result."
        self._check_undelivered()
        try :
            result = self.kind.decode(data)
        except XWireError as err :
            # already popped from the ReplyTable, so fail_all will not reach it
            if not self.future.cancelled() :
                self.future.set_exception(err)
            #end if
            raise
        #end try
        if not self.future.cancelled() :
            self.future.set_result(result)
        #end if
    #end deliver

    def fail(self, exc) :
        self._check_undelivered()
        if not self.future.cancelled() :
            self.future.set_exception(exc)
        #end if
    #end fail

#end PendingRequest

class ReplyTable :
    "FIFO of requests awaiting replies. The server answers requests in the" \
    " order they were sent, so the reply at the front of the inbound stream" \
    " always belongs to the oldest entry. Register an entry before writing" \
    " its request."

    __slots__ = ("_entries",) # to forestall typos

    def __init__(self) :
        self._entries = deque()
    #end __init__

    def __len__(self) :
        return \
            len(self._entries)
    #end __len__

    def register(self, kind, sequence, future) :
        if not isinstance(kind, ReplyKind) :
            raise TypeError("kind must be a ReplyKind")
        #end if
        if len(self._entries) != 0 and sequence <= self._entries[-1].sequence :
            raise CorrelationError \
              (
                "request %d registered out of order after %d" % (sequence, self._entries[-1].sequence)
              )
        #end if
        entry = PendingRequest(kind, sequence, future)
        self._entries.append(entry)
        return \
            entry
    #end register

    def head(self) :
        "the oldest entry, or None if there is none."
        if len(self._entries) != 0 :
            result = self._entries[0]
        else :
            result = None
        #end if
        return \
            result
    #end head

    def pop(self, sequence) :
        "removes and returns the oldest entry, which must be for the request" \
        " with the specified 16-bit sequence number."
        entry = self.head()
        if entry == None :
            raise CorrelationError("reply for request %d, but none is awaiting a reply" % sequence)
        #end if
        if entry.sequence & 0xffff != sequence :
            raise DesyncError \
              (
                    "reply for request %d, but oldest awaiting is %s request %d"
                %
                    (sequence, entry.kind.name, entry.sequence & 0xffff)
              )
        #end if
        self._entries.popleft()
        return \
            entry
    #end pop

    def fail_all(self, exc) :
        "completes all outstanding entries with the specified exception."
        while len(self._entries) != 0 :
            entry = self._entries.popleft()
            if not entry.future.done() :
                entry.future.set_exception(exc)
            #end if
        #end while
    #end fail_all

#end ReplyTable

#+
# Inbound stream
#-

class Demultiplexer :
    "splits the inbound byte stream into frames and routes each one. This" \
    " does no I/O itself: feed() it the bytes as they arrive, then call" \
    " process(). Replies go to the oldest entry in the ReplyTable, events" \
    " to on_event, and errors either to the pending request they belong to" \
    " or to on_error."

    __slots__ = \
        (
            "pending",
            "on_event",
            "on_error",
            "_buffer",
        ) # to forestall typos

    def __init__(self, pending, on_event, on_error) :
        if not isinstance(pending, ReplyTable) :
            raise TypeError("pending must be a ReplyTable")
        #end if
        self.pending = pending
        self.on_event = on_event
        self.on_error = on_error
        self._buffer = bytearray()
    #end __init__

    @property
    def buffered(self) :
        "number of bytes received but not yet consumed as complete frames."
        return \
            len(self._buffer)
    #end buffered

    def feed(self, data) :
        self._buffer += data
    #end feed

    def _take(self, nr_bytes) :
        result = bytes(self._buffer[:nr_bytes])
        del self._buffer[:nr_bytes]
        return \
            result
    #end _take

    def next_message(self) :
        "returns the next complete message as a pair (MSG.ERROR, XError)," \
        " (MSG.REPLY, (PendingRequest, reply bytes)) or (MSG.EVENT, event)," \
        " or None if more bytes are needed first. A reply is only matched" \
        " to its PendingRequest once all its bytes have arrived."
        buf = self._buffer
        result = None
        if len(buf) >= FRAME_SIZE :
            first = buf[0]
            if first == X.Error :
                result = (MSG.ERROR, decode_error(self._take(FRAME_SIZE)))
            elif first == X.Reply :
                sequence, reply_words = struct.unpack_from("<HI", buf, 2)
                entry = self.pending.head()
                if entry == None :
                    raise CorrelationError \
                      (
                        "reply for request %d, but none is awaiting a reply" % sequence
                      )
                #end if
                if entry.kind.reply_words != None and reply_words != entry.kind.reply_words :
                    raise DesyncError \
                      (
                            "%s reply declares length %d words, expected %d"
                        %
                            (entry.kind.name, reply_words, entry.kind.reply_words)
                      )
                #end if
                total = FRAME_SIZE + 4 * reply_words
                if len(buf) >= total :
                    entry = self.pending.pop(sequence)
                    result = (MSG.REPLY, (entry, self._take(total)))
                #end if
            elif 2 <= first & ~SYNTHETIC_EVENT <= max(EVENT) :
                result = (MSG.EVENT, decode_event(self._take(FRAME_SIZE)))
            else :
                raise DesyncError("unknown message type %d" % first)
            #end if
        #end if
        return \
            result
    #end next_message

    def process(self) :
        "routes all complete messages currently buffered."
        while True :
            message = self.next_message()
            if message == None :
                break
            msgtype, content = message
            if msgtype == MSG.REPLY :
                entry, data = content
                _logger.debug("reply for %s request %d, %d bytes", entry.kind.name, entry.sequence, len(data))
                entry.deliver(data)
            elif msgtype == MSG.ERROR :
                entry = self.pending.head()
                if entry != None and entry.sequence & 0xffff == content.sequence :
                    # server sends no reply for a failed request
                    self.pending.pop(content.sequence)
                    entry.fail(XErrorReply(content))
                else :
                    self.on_error(content)
                #end if
            else :
                _logger.debug("event %s", content.kind.name)
                self.on_event(content)
            #end if
        #end while
    #end process

#end Demultiplexer

class EventStream :
    "asynchronous iterator over events, and over errors not claimed by any" \
    " request, received on a Connection. Do not instantiate directly; get" \
    " from Connection.subscribe_events(). Iteration ends when the connection" \
    " is closed; if the connection fails, the failure is raised."

    __slots__ = \
        (
            "__weakref__",
            "_w_conn",
            "_queue",
            "_done",
        ) # to forestall typos

    def __init__(self, conn) :
        self._w_conn = weak_ref(conn)
        self._queue = asyncio.Queue()
        self._done = False
    #end __init__

    def _put(self, item) :
        self._queue.put_nowait(item)
    #end _put

    def __aiter__(self) :
        return \
            self
    #end __aiter__

    async def __anext__(self) :
        if self._done :
            raise StopAsyncIteration
        #end if
        item = await self._queue.get()
        if item == None :
            self._done = True
            raise StopAsyncIteration
        elif isinstance(item, BaseException) :
            self._done = True
            raise item
        #end if
        return \
            item
    #end __anext__

    def close(self) :
        "stops receiving further events."
        conn = self._w_conn()
        if conn != None :
            conn._unsubscribe(self)
        #end if
        if not self._done :
            self._put(None)
        #end if
    #end close

#end EventStream

#+
# Main classes
#-

class Connection :
    "a connection to an X server over a local stream socket. Do not" \
    " instantiate directly; get from the open() method or connect()." \
    "\n" \
    "Request methods write their request immediately; those that create" \
    " a resource return its ID, those that expect a reply return a Future" \
    " that can be awaited to obtain the decoded reply."

    __slots__ = \
        (
            "__weakref__",
            "loop",
            "info",
            "ids",
            "sequence",
            "failure",
            "_reader",
            "_writer",
            "_pending",
            "_demux",
            "_reader_task",
            "_event_filters",
            "_subscribers",
        ) # to forestall typos

    read_size = 65536
      # how many bytes to ask for on each socket read

    def __init__(self, reader, writer, info, loop = None) :
        if loop == None :
            loop = asyncio.get_running_loop()
        #end if
        if not isinstance(info, HandshakeInfo) :
            raise TypeError("info must be a HandshakeInfo")
        #end if
        self.loop = loop
        self.info = info
        self.ids = IdGenerator(info.resource_id_base, info.resource_id_mask)
        self.sequence = 0
        self.failure = None
        self._reader = reader
        self._writer = writer
        self._pending = ReplyTable()
        self._demux = Demultiplexer(self._pending, self._handle_event, self._handle_error)
        self._event_filters = []
        self._subscribers = []
        self._reader_task = loop.create_task \
          (
            self._read_loop(weak_ref(self), reader, self.read_size)
          )
    #end __init__

    @classmethod
    async def open(celf, path = None, *, sock = None) :
        "connects to the X server listening on the Unix socket at path, or" \
        " over the already-connected socket object sock, performs the" \
        " connection setup, and returns a Connection."
        if (path == None) == (sock == None) :
            raise TypeError("specify exactly one of path or sock")
        #end if
        try :
            reader, writer = await asyncio.open_unix_connection(path = path, sock = sock)
        except OSError as err :
            raise ConnectionClosed("cannot connect to X server: %s" % err) from err
        #end try
        try :
            writer.write(setup_request())
            await writer.drain()
            header = await reader.readexactly(8)
            data = header + await reader.readexactly(setup_reply_length(header) - 8)
            info = decode_setup(data)
        except asyncio.IncompleteReadError as err :
            writer.close()
            raise ConnectionClosed("server closed connection during setup") from err
        except OSError as err :
            writer.close()
            raise ConnectionClosed("connection setup failed: %s" % err) from err
        except XWireError :
            writer.close()
            raise
        #end try
        _logger.debug \
          (
            "connected to %r release %d, protocol %d.%d, %d screen(s)",
            info.vendor,
            info.release_number,
            info.protocol_major_version,
            info.protocol_minor_version,
            len(info.roots)
          )
        return \
            celf(reader, writer, info)
    #end open

    def close(self) :
        "closes the connection. Any requests still awaiting replies fail" \
        " with ConnectionClosed, and event streams end."
        if self._writer != None :
            self._reader_task.cancel()
            self._writer.close()
            if self.failure == None :
                self.failure = ConnectionClosed("connection closed")
            #end if
            self._pending.fail_all(self.failure)
            for stream in self._subscribers[:] :
                stream._put(None)
            #end for
            self._subscribers[:] = []
            self._writer = None
            self._reader = None
        #end if
    #end close

    @staticmethod
    async def _read_loop(w_self, reader, read_size) :
        # runs for the life of the connection, feeding inbound bytes to the
        # Demultiplexer. Holds only a weak reference to the Connection
        # between reads.
        while True :
            try :
                data = await reader.read(read_size)
            except OSError as err :
                data = err
            #end try
            self = w_self()
            if self == None :
                break
            try :
                if isinstance(data, OSError) :
                    raise ConnectionClosed("socket read failed: %s" % data) from data
                #end if
                if len(data) == 0 :
                    raise ConnectionClosed("server closed the connection")
                #end if
                self._demux.feed(data)
                self._demux.process()
            except Exception as err :
                self._fail(err)
                break
            #end try
            del self
        #end while
    #end _read_loop

    def _fail(self, err) :
        # the connection can no longer be used: pass the failure on to
        # everybody waiting for something from it.
        if self.failure == None :
            _logger.error("X11 connection failed: %s", err)
            self.failure = err
            self._pending.fail_all(err)
            self._run_filters(err, None)
            for stream in self._subscribers[:] :
                stream._put(err)
            #end for
            self._subscribers[:] = []
            if self._writer != None :
                self._writer.close()
                self._writer = None
                self._reader = None
            #end if
        #end if
    #end _fail

    def _run_filters(self, item, kind) :
        # passes item to every filter selecting kind, or only to those
        # selecting all events if kind is None. A filter that raises is
        # reported to the event loop and does not stop the others.
        event_filters = self._event_filters[:]
          # copy in case actions make changes
        for action, args, selevents in event_filters :
            if selevents == None or kind != None and kind in selevents :
                try :
                    action(item, *args)
                except Exception as err :
                    self.loop.call_exception_handler \
                      (
                        {
                            "message" : "exception in X11 event filter %r" % (action,),
                            "exception" : err,
                        }
                      )
                #end try
            #end if
        #end for
    #end _run_filters

    def _handle_event(self, event) :
        self._run_filters(event, event.kind)
        for stream in self._subscribers :
            stream._put(event)
        #end for
    #end _handle_event

    def _handle_error(self, error) :
        _logger.warning("%s", error)
        self._run_filters(error, None)
        for stream in self._subscribers :
            stream._put(error)
        #end for
    #end _handle_error

    def add_event_filter(self, action, args = (), selevents = None) :
        "installs a filter which gets to see the specified incoming events (or" \
        " all events if not specified). It is invoked as “action(event, *args)“" \
        " where the meaning of args is up to you. Filters installed without" \
        " selevents also see XError objects for errors not belonging to any" \
        " request awaiting a reply, and the exception if the connection fails."
        if isinstance(selevents, int) :
            selevents = {selevents}
        #end if
        if (
                selevents != None
            and
                not all(isinstance(e, int) and e in EVENT.__members__.values() for e in selevents)
        ) :
            raise TypeError("selevents is not a set or sequence of EVENT codes")
        #end if
        if any(elt[:2] == (action, args) for elt in self._event_filters) :
            raise KeyError("attempt to install duplicate action+args")
        #end if
        if selevents != None :
            selevents = set(EVENT(e) for e in selevents) # ensure it’s a unique copy
        #end if
        self._event_filters.append((action, args, selevents))
    #end add_event_filter

    def remove_event_filter(self, action, args = (), *, optional : bool) :
        "removes a previously-installed event filter. optional indicates" \
        " not to report an error if no such filter is installed."
        pos = list \
          (
            i
            for i in range(len(self._event_filters))
            for elt in (self._event_filters[i],)
            if elt[:2] == (action, args)
          )
        assert len(pos) <= 1
        if len(pos) == 1 :
            self._event_filters.pop(pos[0])
        elif not optional :
            raise KeyError("specified action+args was not installed as an event filter")
        #end if
    #end remove_event_filter

    def subscribe_events(self) :
        "returns an EventStream which can be iterated with “async for” to" \
        " receive all subsequent events."
        if self.failure != None :
            raise self.failure
        #end if
        stream = EventStream(self)
        self._subscribers.append(stream)
        return \
            stream
    #end subscribe_events

    def _unsubscribe(self, stream) :
        if stream in self._subscribers :
            self._subscribers.remove(stream)
        #end if
    #end _unsubscribe

    def send_request(self, request) :
        "writes a single encoded request. If the request expects a reply," \
        " it is registered to receive it before being written, and a Future" \
        " for the decoded reply is returned; otherwise the result is None."
        if self.failure != None :
            raise self.failure
        #end if
        request = bytes(request)
        if len(request) < 4 or len(request) % 4 != 0 :
            raise ValueError("request must be a whole number of 4-byte words")
        #end if
        if len(request) > 4 * self.info.maximum_request_length :
            raise ValueError \
              (
                    "request of %d bytes exceeds server maximum of %d"
                %
                    (len(request), 4 * self.info.maximum_request_length)
              )
        #end if
        self.sequence += 1
        kind = REPLY_KINDS.get(request[0])
        if kind != None :
            result = self.loop.create_future()
            self._pending.register(kind, self.sequence, result)
        else :
            result = None
        #end if
        self._writer.write(request)
        return \
            result
    #end send_request

    async def flush(self) :
        "waits until everything written so far has been handed to the socket."
        if self.failure != None :
            raise self.failure
        #end if
        await self._writer.drain()
    #end flush

    def _request(self, encode, *args, **kwargs) :
        # encodes a request and sends it; returns the encoder result
        # if there is no reply Future.
        buf = bytearray()
        id = encode(buf, *args, **kwargs)
        result = self.send_request(buf)
        if result == None :
            result = id
        #end if
        return \
            result
    #end _request

    def generate_id(self) :
        "returns a new resource ID, raising IDExhausted if there are none left."
        return \
            _allocate(self.ids)
    #end generate_id

    def root_window(self, rootnr = 0) :
        "returns the ID of the root window of the specified screen."
        return \
            self.info.roots[rootnr].root
    #end root_window

    def create_window \
      (
        self,
        parent : XID,
        x : int,
        y : int,
        width : int,
        height : int,
        border_width : int = 0,
        window_class = WINDOW_CLASS.INPUT_OUTPUT,
        visual = COPY_FROM_PARENT,
        depth = COPY_FROM_PARENT,
        set_attrs = ()
      ) :
        "creates a window and returns its ID."
        return \
            self._request \
              (
                encode_create_window,
                self.ids,
                parent,
                x,
                y,
                width,
                height,
                border_width,
                window_class,
                visual,
                depth,
                set_attrs
              )
    #end create_window

    def change_window_attributes(self, window : XID, attrs) :
        self._request(encode_change_window_attributes, window, attrs)
    #end change_window_attributes

    def get_window_attributes(self, window : XID) :
        "returns a Future for a WindowAttributes."
        return \
            self._request(encode_get_window_attributes, window)
    #end get_window_attributes

    def destroy_window(self, window : XID) :
        self._request(encode_destroy_window, window)
    #end destroy_window

    def set_mapped(self, window : XID, mapped : bool) :
        "sets the window’s mapped (visible) state."
        if mapped :
            self._request(encode_map_window, window)
        else :
            self._request(encode_unmap_window, window)
        #end if
    #end set_mapped

    def configure_window(self, window : XID, config_attrs) :
        self._request(encode_configure_window, window, config_attrs)
    #end configure_window

    def get_geometry(self, drawable : XID) :
        "returns a Future for a Geometry."
        return \
            self._request(encode_get_geometry, drawable)
    #end get_geometry

    def intern_atom(self, name, only_if_exists : bool = False) :
        "returns a Future for the atom, which is None if only_if_exists and" \
        " there is no such atom."
        return \
            self._request(encode_intern_atom, name, only_if_exists)
    #end intern_atom

    def open_font(self, name) :
        "opens the named font and returns its ID."
        return \
            self._request(encode_open_font, self.ids, name)
    #end open_font

    def close_font(self, font : XID) :
        self._request(encode_close_font, font)
    #end close_font

    def list_fonts(self, pattern, max_names : int = 0xffff) :
        "returns a Future for a list of font names matching pattern."
        return \
            self._request(encode_list_fonts, pattern, max_names)
    #end list_fonts

    def create_pixmap(self, drawable : XID, depth : int, width : int, height : int) :
        "creates a Pixmap on the same screen as drawable and returns its ID."
        return \
            self._request(encode_create_pixmap, self.ids, drawable, depth, width, height)
    #end create_pixmap

    def free_pixmap(self, pixmap : XID) :
        self._request(encode_free_pixmap, pixmap)
    #end free_pixmap

    def create_gc(self, drawable : XID, set_attrs = ()) :
        "creates a graphics context and returns its ID."
        return \
            self._request(encode_create_gc, self.ids, drawable, set_attrs)
    #end create_gc

    def change_gc(self, gc : XID, attrs) :
        self._request(encode_change_gc, gc, attrs)
    #end change_gc

    def free_gc(self, gc : XID) :
        self._request(encode_free_gc, gc)
    #end free_gc

    def clear_area(self, window : XID, x : int, y : int, width : int, height : int, exposures : bool = False) :
        self._request(encode_clear_area, window, x, y, width, height, exposures)
    #end clear_area

    def poly_fill_rectangle(self, drawable : XID, gc : XID, rects) :
        self._request(encode_poly_fill_rectangle, drawable, gc, rects)
    #end poly_fill_rectangle

    def poly_text8(self, drawable : XID, gc : XID, x : int, y : int, text, delta : int = 0) :
        self._request(encode_poly_text8, drawable, gc, x, y, text, delta)
    #end poly_text8

    def image_text8(self, drawable : XID, gc : XID, x : int, y : int, text) :
        self._request(encode_image_text8, drawable, gc, x, y, text)
    #end image_text8

    def query_extension(self, name) :
        "returns a Future for an ExtensionInfo."
        return \
            self._request(encode_query_extension, name)
    #end query_extension

    def list_extensions(self) :
        "returns a Future for a list of extension names."
        return \
            self._request(encode_list_extensions)
    #end list_extensions

    def no_operation(self) :
        self._request(encode_no_operation)
    #end no_operation

#end Connection

async def connect(path) :
    "opens a Connection to the X server listening on the Unix socket at path."
    return \
        await Connection.open(path)
#end connect
