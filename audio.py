"""
CHIP-8 Audio
=============
The buzzer.  The scheduler calls start() when the sound timer becomes
non-zero and stop() when it reaches zero again; both are idempotent.

ToneAudio plays a looping stereo sine (256 Hz left, 320 Hz right) through
pygame.mixer.  NullAudio just records the on/off state.
"""

from __future__ import annotations

import logging

log = logging.getLogger(__name__)

SAMPLE_RATE = 44100
FREQ_LEFT   = 256.0
FREQ_RIGHT  = 320.0
AMPLITUDE   = 4096


def sine_samples(freq_left: float = FREQ_LEFT, freq_right: float = FREQ_RIGHT,
                 sample_rate: int = SAMPLE_RATE, seconds: float = 1.0):
    """One loopable buffer of 16-bit stereo samples, shape (n, 2).

    One second holds a whole number of cycles of both tones, so looping
    it is click-free.
    """
    import numpy as np

    t = np.arange(int(sample_rate * seconds)) / sample_rate
    left = AMPLITUDE * np.sin(2 * np.pi * freq_left * t)
    right = AMPLITUDE * np.sin(2 * np.pi * freq_right * t)
    return np.column_stack((left, right)).astype(np.int16)


class NullAudio:
    """Silent stand-in that remembers whether a tone would be playing."""

    def __init__(self):
        self.is_on = False
        self.starts = 0

    def start(self):
        if not self.is_on:
            self.is_on = True
            self.starts += 1

    def stop(self):
        self.is_on = False

    def destroy(self):
        self.stop()


class ToneAudio:
    """Looping tone through pygame.mixer."""

    def __init__(self, sample_rate: int = SAMPLE_RATE):
        import pygame

        self._pygame = pygame
        pygame.mixer.init(sample_rate, -16, 2, 1024)
        self._sound = pygame.sndarray.make_sound(sine_samples(sample_rate=sample_rate))
        log.debug("mixer ready at %d Hz", sample_rate)
        self.is_on = False

    def start(self):
        if not self.is_on:
            self.is_on = True
            self._sound.play(loops=-1)

    def stop(self):
        if self.is_on:
            self.is_on = False
            self._sound.stop()

    def destroy(self):
        self.stop()
        self._pygame.mixer.quit()
