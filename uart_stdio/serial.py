import warnings
from numbers import Real

from amaranth import *
from amaranth.lib import enum
from amaranth.lib.cdc import FFSynchronizer


__all__ = ["bit_period", "AsyncSerialRX", "AsyncSerialTX", "AsyncSerial"]


def bit_period(clk_freq, baud_rate):
    """Number of clock cycles spanned by one serial bit.

    Parameters
    ----------
    clk_freq : int or float
        Frequency of the clock driving the core, in Hz.
    baud_rate : int or float
        Line rate, in bits per second.

    Returns the bit period truncated to an integer. Raises :exc:`ValueError` if the
    line rate is so high that the bit period would be less than one cycle.
    """
    for name, value in (("clock frequency", clk_freq), ("baud rate", baud_rate)):
        if isinstance(value, bool) or not isinstance(value, Real):
            raise TypeError("Invalid {} {!r}; must be a number"
                            .format(name, value))
        if value <= 0:
            raise ValueError("Invalid {} {!r}; must be positive"
                             .format(name, value))
    period = int(clk_freq // baud_rate)
    if period < 1:
        raise ValueError("Baud rate {!r} is too high for a clock frequency of {!r}; "
                         "a bit must last at least one clock cycle"
                         .format(baud_rate, clk_freq))
    if period < 5:
        warnings.warn("Bit period of {} clock cycles is shorter than 5 cycles; "
                      "mid-bit sampling has little margin against line jitter"
                      .format(period))
    return period


def _check_divisor(divisor):
    if isinstance(divisor, bool) or not isinstance(divisor, int):
        raise TypeError("Invalid divisor {!r}; must be an integer"
                        .format(divisor))
    if divisor < 1:
        raise ValueError("Invalid divisor {!r}; must be at least 1"
                         .format(divisor))


def _check_data_bits(data_bits):
    if isinstance(data_bits, bool) or not isinstance(data_bits, int) or data_bits < 1:
        raise ValueError("Invalid data width {!r}; must be a positive integer"
                         .format(data_bits))


class RXState(enum.Enum, shape=2):
    IDLE = 0
    BUSY = 1
    DONE = 2


class TXState(enum.Enum, shape=2):
    IDLE = 0
    BUSY = 1


class AsyncSerialRX(Elaboratable):
    """An UART receiver module. Receives the LSB first and MSB last.

    The falling edge of the start bit is detected with a single sample. From
    that cycle on, every bit window lasts ``divisor`` cycles and data bits
    are sampled once, in the middle of their window. The stop bit is not
    checked.

    Parameters
    ----------
    divisor : int
        Bit period, in clock cycles. See :func:`bit_period`.
    data_bits : int
        Number of data bits per frame.
    pins : Record or None
        Platform resource with an ``rx.i`` pin; synchronized into ``i``.

    Attributes
    ----------
    i : Signal()
        Serial line. Idles high.
    data : Signal(data_bits)
        Last received word. Held until the next word is complete.
    valid : Signal()
        Output; asserted while a received word waits to be picked up.
    ready : Signal()
        Input; the consumer takes ``data`` on cycles where both ``valid``
        and ``ready`` are asserted.
    busy : Signal()
        Output; asserted while a frame is being sampled.
    """
    def __init__(self, *, divisor, data_bits=8, pins=None):
        _check_divisor(divisor)
        _check_data_bits(data_bits)
        self.divisor = divisor
        self._data_bits = data_bits
        self._pins = pins

        self.data  = Signal(data_bits)
        self.valid = Signal()
        self.ready = Signal()
        self.busy  = Signal()

        self.i     = Signal(init=1)

        self.state = Signal(RXState, init=RXState.IDLE)
        # Cycle within the current bit window
        self.timer = Signal(range(divisor))
        # Bit window index; 0 is the start bit
        self.bitno = Signal(range(data_bits + 1))
        self.shreg = Signal(data_bits)

    def elaborate(self, platform):
        m = Module()

        timer = self.timer
        bitno = self.bitno
        shreg = self.shreg

        if self._pins is not None:
            m.submodules += FFSynchronizer(self._pins.rx.i, self.i, init=1)

        sample = Signal()
        shreg_next = Signal.like(shreg)
        m.d.comb += [
            sample.eq((timer == self.divisor // 2) & (bitno != 0)),
            shreg_next.eq(Mux(sample, Cat(shreg[1:], self.i), shreg)),
        ]

        with m.Switch(self.state):
            with m.Case(RXState.IDLE):
                m.d.sync += [
                    shreg.eq(0),
                    timer.eq(0),
                    bitno.eq(0),
                ]
                with m.If(~self.i):
                    # This cycle is the first one of the start bit window
                    if self.divisor == 1:
                        m.d.sync += bitno.eq(1)
                    else:
                        m.d.sync += timer.eq(1)
                    m.d.sync += self.state.eq(RXState.BUSY)

            with m.Case(RXState.BUSY):
                m.d.sync += shreg.eq(shreg_next)
                with m.If(timer == self.divisor - 1):
                    m.d.sync += [
                        timer.eq(0),
                        bitno.eq(bitno + 1),
                    ]
                    with m.If(bitno == self._data_bits):
                        m.d.sync += [
                            self.data.eq(shreg_next),
                            bitno.eq(0),
                            self.state.eq(RXState.DONE),
                        ]
                with m.Else():
                    m.d.sync += timer.eq(timer + 1)

            with m.Case(RXState.DONE):
                # The line is not watched until the word has been taken
                with m.If(self.ready):
                    m.d.sync += self.state.eq(RXState.IDLE)

            with m.Default():
                m.d.sync += self.state.eq(RXState.IDLE)

        m.d.comb += [
            self.valid.eq(self.state == RXState.DONE),
            self.busy.eq(self.state == RXState.BUSY),
        ]

        return m


class AsyncSerialTX(Elaboratable):
    """An UART transmitter module. Transmits the LSB first and MSB last.

    A word is taken on a cycle where both ``valid`` and ``ready`` are
    asserted. The start bit is issued on the next cycle, and ``ready`` stays
    low until the stop bit has lasted a full bit period.

    Parameters
    ----------
    divisor : int
        Bit period, in clock cycles. See :func:`bit_period`.
    data_bits : int
        Number of data bits per frame.
    pins : Record or None
        Platform resource with a ``tx.o`` pin; driven from ``o``.

    Attributes
    ----------
    data : Signal(data_bits)
        Input; word to transmit.
    valid : Signal()
        Input; asserted by the producer while ``data`` holds a word.
    ready : Signal()
        Output; asserted while the transmitter can take a word.
    busy : Signal()
        Output; asserted while a frame is being shifted out.
    o : Signal()
        Serial line. Idles high.
    """
    def __init__(self, *, divisor, data_bits=8, pins=None):
        _check_divisor(divisor)
        _check_data_bits(data_bits)
        self.divisor = divisor
        self._data_bits = data_bits
        self._pins = pins

        self.data  = Signal(data_bits)
        self.valid = Signal()
        self.ready = Signal()
        self.busy  = Signal()

        self.o     = Signal(init=1)

        self.state = Signal(TXState, init=TXState.IDLE)
        self.timer = Signal(range(divisor))
        # Data bits followed by the stop bit; the start bit is driven directly
        self.shreg = Signal(data_bits + 1)
        self.bitno = Signal(range(len(self.shreg) + 1))

    def elaborate(self, platform):
        m = Module()

        timer = self.timer
        shreg = self.shreg
        bitno = self.bitno

        if self._pins is not None:
            m.d.comb += self._pins.tx.o.eq(self.o)

        with m.Switch(self.state):
            with m.Case(TXState.IDLE):
                m.d.sync += self.o.eq(1)
                with m.If(self.valid):
                    m.d.sync += [
                        self.o.eq(0),       # Issue start bit ASAP
                        shreg.eq(Cat(self.data, C(1, 1))),
                        timer.eq(self.divisor - 1),
                        bitno.eq(0),
                        self.state.eq(TXState.BUSY),
                    ]

            with m.Case(TXState.BUSY):
                with m.If(timer != 0):
                    m.d.sync += timer.eq(timer - 1)
                with m.Else():
                    m.d.sync += timer.eq(self.divisor - 1)
                    with m.If(bitno != len(shreg)):
                        m.d.sync += [
                            bitno.eq(bitno + 1),
                            self.o.eq(shreg[0]),
                            shreg.eq(shreg[1:]),
                        ]
                    with m.Else():
                        m.d.sync += self.state.eq(TXState.IDLE)

            with m.Default():
                m.d.sync += self.state.eq(TXState.IDLE)

        m.d.comb += [
            self.ready.eq(self.state == TXState.IDLE),
            self.busy.eq(self.state == TXState.BUSY),
        ]

        return m


class AsyncSerial(Elaboratable):
    """An UART transceiver. The receiver and the transmitter are independent
    and only share the bit period derived from ``clk_freq`` and ``baud_rate``.
    """
    def __init__(self, *, clk_freq, baud_rate, **kwargs):
        self.divisor = bit_period(clk_freq, baud_rate)

        self.rx = AsyncSerialRX(divisor=self.divisor, **kwargs)
        self.tx = AsyncSerialTX(divisor=self.divisor, **kwargs)

    def elaborate(self, platform):
        m = Module()
        m.submodules.rx = self.rx
        m.submodules.tx = self.tx
        return m
