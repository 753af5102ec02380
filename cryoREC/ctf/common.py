import math

import torch


def electron_wavelength(volt):
    """Relativistic electron wavelength (Angstrom) for an accelerating voltage in kV."""
    volt = volt * 1000
    # lam = sqrt(h^2/(2*m*e*Vr)); Vr = V + (e/(2*m*c^2))*V^2
    return 12.2639 / (volt + 0.97845e-6 * volt ** 2) ** .5


def defocus_at(freqs, dfu, dfv, dfang):
    """Astigmatic defocus (Angstrom) along the direction of each (x, y) frequency."""
    ang = torch.atan2(freqs[..., 1], freqs[..., 0])
    dfang = dfang * torch.pi / 180
    return .5 * (dfu + dfv + (dfu - dfv) * torch.cos(2 * (ang - dfang)))


def compute_gamma(freqs, dfu, dfv, dfang, volt, cs, w, phase_shift=0):
    '''
    Phase of the CTF, including the amplitude contrast term, so that CTF = -sin(gamma)

    Input:
        freqs (Tensor) ...x2 tensor of 2D spatial frequencies (x, y) in 1/Angstrom
        dfu (float): DefocusU (Angstrom)
        dfv (float): DefocusV (Angstrom)
        dfang (float): DefocusAngle (degrees)
        volt (float): accelerating voltage (kV)
        cs (float): spherical aberration (mm)
        w (float): amplitude contrast ratio
        phase_shift (float): degrees
    '''
    assert freqs.shape[-1] == 2
    cs = cs * 10 ** 7
    phase_shift = phase_shift * torch.pi / 180
    lam = electron_wavelength(volt)
    s2 = freqs[..., 0] ** 2 + freqs[..., 1] ** 2
    df = defocus_at(freqs, dfu, dfv, dfang)
    gamma = 2 * torch.pi * (-.5 * df * lam * s2 + .25 * cs * lam ** 3 * s2 ** 2) - phase_shift
    return gamma - math.asin(w)


def envelope(freqs, bfactor=None, scale=1.0):
    if bfactor is None:
        return scale
    s2 = freqs[..., 0] ** 2 + freqs[..., 1] ** 2
    return scale * torch.exp(-bfactor / 4 * s2)


def compute_ctf(freqs, dfu, dfv, dfang, volt, cs, w, phase_shift=0, bfactor=None, scale=1.0):
    """Real CTF value at each frequency."""
    gamma = compute_gamma(freqs, dfu, dfv, dfang, volt, cs, w, phase_shift)
    return -torch.sin(gamma) * envelope(freqs, bfactor, scale)


def compute_ctfp(freqs, sign, dfu, dfv, dfang, volt, cs, w, phase_shift=0, bfactor=None, scale=1.0):
    """
    Complex CTFP (sign=+1) or CTFQ (sign=-1) value at each frequency: exp(i*(gamma + pi/2)) with the sign
    applied to the imaginary part. Its real part is the CTF. `sign` may be a tensor of +-1 broadcastable to freqs.
    """
    gamma = compute_gamma(freqs, dfu, dfv, dfang, volt, cs, w, phase_shift) + torch.pi / 2
    env = envelope(freqs, bfactor, scale)
    return torch.complex(torch.cos(gamma) * env, sign * torch.sin(gamma) * env)
