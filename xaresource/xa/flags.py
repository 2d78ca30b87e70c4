"""
XA flag vocabulary and return codes.

Flag values follow the X/Open XA specification so coordinators written
against other XA implementations can pass their own constants through.
"""

from enum import IntFlag


class XAFlags(IntFlag):
    """
    Flags accepted by XAResource operations.

    - start: TMNOFLAGS, TMJOIN, TMRESUME
    - end: TMSUCCESS, TMFAIL, TMSUSPEND
    - recover: TMSTARTRSCAN, TMENDRSCAN (or TMNOFLAGS to continue a scan)
    """

    TMNOFLAGS = 0x00000000
    TMJOIN = 0x00200000
    TMENDRSCAN = 0x00800000
    TMSTARTRSCAN = 0x01000000
    TMSUSPEND = 0x02000000
    TMSUCCESS = 0x04000000
    TMRESUME = 0x08000000
    TMFAIL = 0x20000000
    TMONEPHASE = 0x40000000


# prepare() votes
XA_OK = 0
XA_RDONLY = 3

START_FLAGS = frozenset({XAFlags.TMNOFLAGS, XAFlags.TMJOIN, XAFlags.TMRESUME})
END_FLAGS = frozenset({XAFlags.TMSUCCESS, XAFlags.TMFAIL, XAFlags.TMSUSPEND})
RECOVER_FLAGS = frozenset({
    XAFlags.TMNOFLAGS,
    XAFlags.TMSTARTRSCAN,
    XAFlags.TMENDRSCAN,
    XAFlags.TMSTARTRSCAN | XAFlags.TMENDRSCAN,
})
