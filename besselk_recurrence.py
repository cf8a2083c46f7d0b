import logging
import operator
from typing import NoReturn

import torch
torch.set_default_dtype(torch.float64)

logger = logging.getLogger(__name__)


class InvalidArgument(ValueError):
    """
    Raised when an argument violates a precondition of a K-function routine.

    Attributes
    ----------
    kind : str
        "order" when the order n is out of range, "domain" when x is not
        positive and finite.
    routine : str
        Name of the routine that rejected the argument.
    """

    def __init__(self, message: str, kind: str = "order", routine: str = "bessk"):
        super().__init__(message)
        self.kind = kind
        self.routine = routine


class RecurrenceEvaluator:
    """
    K_n(x) for integer n >= 2 by upward recurrence on the order:

        K_{j+1}(x) = K_{j-1}(x) + (2j/x) K_j(x)

    seeded with K_0(x) and K_1(x) from the injected base evaluators.

    Notes
    -----
    * Upward recurrence is stable for K_n because K_n grows with n.
      The modified Bessel function of the first kind, I_n, decays with n
      and needs downward recurrence instead; do not reuse this loop for it.
    * No overflow check: for large n and small x the result becomes inf.
    * On a bad argument, ``report_error(message)`` is called when given.
      If it returns, or none was given, InvalidArgument is raised.
    """

    def __init__(self, k0, k1, report_error=None, routine: str = "bessk"):
        """
        Parameters
        ----------
        k0, k1 : callable
            x -> K_0(x) and x -> K_1(x); x is a float64 tensor.
        report_error : callable, optional
            Called with the error message before InvalidArgument is raised.
        routine : str
            Routine name used in error messages.
        """
        self.k0 = k0
        self.k1 = k1
        self.report_error = report_error
        self.routine = routine

    def _fail(self, kind: str, message: str) -> NoReturn:
        logger.error("%s: %s", self.routine, message)
        if self.report_error is not None:
            self.report_error(message)
        raise InvalidArgument(message, kind=kind, routine=self.routine)

    def evaluate(self, n: int, x) -> torch.Tensor:
        n = operator.index(n)
        if n < 2:
            self._fail("order", f"Index n less than 2 in {self.routine} (n={n})")

        x = torch.as_tensor(x, dtype=torch.float64)
        if not bool(torch.all(torch.isfinite(x) & (x > 0))):
            self._fail(
                "domain",
                f"Argument x must be positive and finite in {self.routine} "
                f"(x={x.detach().tolist()!r})",
            )

        logger.debug("%s: n=%d, %d recurrence steps", self.routine, n, n - 1)
        tox = 2.0 / x
        bkm = self.k0(x)
        bk = self.k1(x)
        for j in range(1, n):
            bkp = bkm + j * tox * bk
            bkm = bk
            bk = bkp
        return bk

    __call__ = evaluate


class BesselK:
    """
    Default K_0 / K_1 provider for RecurrenceEvaluator.

    ``k0`` and ``k1`` are the seeds handed to ``self.recurrence`` (and to the
    module-level ``bessk``); ``kn`` answers n = 0, 1 directly and passes
    n >= 2 to the recurrence, so its rejections are logged and reported
    the same way.

    Notes
    -----
    * Small-x (x <= x_switch):
        K0: exact series  K0 = -(log(x/2)+γ) I0 + Σ_{k>=1} H_k (x/2)^{2k}/(k!)^2
        K1: exact series  K1 = 1/x + (log(x/2)+γ) I1
                           - (1/2) Σ_{k>=0} (H_k + H_{k+1}) (x/2)^{2k+1}/(k!(k+1)!)
    * Large-x (x > x_switch):
        Rational approximations in the form
        Kν(x) ≈ exp(-x)/sqrt(x) * (P(1/x)/Q(1/x))
    * Autograd friendly; works on CPU/GPU; dtype=float64
    """
    EULER_GAMMA = 0.5772156649015328606

    # --- Large-x coefficients (double-grade) ---
    # K0: x^{1/2} e^x K0 ≈ P21(1/x)/Q2(1/x)
    K0_P21 = [
        1.0694678222191263215918328e-01,  9.0753360415683846760792445e-01,
        1.7215172959695072045669045e+00, -1.7172089076875257095489749e-01,
        7.3154750356991229825958019e-02, -5.4975286232097852780866385e-02,
        5.7217703802970844746230694e-02, -7.2884177844363453190380429e-02,
        1.0443967655783544973080767e-01, -1.5741597553317349976818516e-01,
        2.3582486699296814538802637e-01, -3.3484166783257765115562496e-01,
        4.3328524890855568555069622e-01, -4.9470375304462431447923425e-01,
        4.8474122247422388055091847e-01, -3.9725799556374477699937953e-01,
        2.6507653322930767914034592e-01, -1.3951265948137254924254912e-01,
        5.5500667358490463548729700e-02, -1.5636955694760495736676521e-02,
        2.7741514506299244078981715e-03, -2.3261089001545715929104236e-04,
    ]
    K0_Q2  = [8.5331186362410449871043129e-02, 7.3477344946182065340442326e-01, 1.4594189037511445958046540e+00]

    # K1: x^{1/2} e^x K1 ≈ P22(1/x)/Q2(1/x)
    K1_P22 = [
        1.0234817795732426171122752e-01,  9.4576473594736724815742878e-01,
        2.1876721356881381470401990e+00,  6.0143447861316538915034873e-01,
       -1.3961391456741388991743381e-01,  8.8229427272346799004782764e-02,
       -8.5494054051512748665954180e-02,  1.0617946033429943924055318e-01,
       -1.5284482951051872048173726e-01,  2.3707700686462639842005570e-01,
       -3.7345723872158017497895685e-01,  5.6874783855986054797640277e-01,
       -8.0418742944483208700659463e-01,  1.0215105768084562101457969e+00,
       -1.1342221242815914077805587e+00,  1.0746932686976675016706662e+00,
       -8.4904532475797772009120500e-01,  5.4542251056566299656460363e-01,
       -2.7630896752209862007904214e-01,  1.0585982409547307546052147e-01,
       -2.8751691985417886721803220e-02,  4.9233441525877381700355793e-03,
       -3.9900679319457222207987456e-04,
    ]
    K1_Q2  = [8.1662031018453173425764707e-02, 7.2398781933228355889996920e-01, 1.4835841581744134589980018e+00]

    def __init__(self, series_terms: int = 16, x_switch: float = 1.0):
        """
        Parameters
        ----------
        series_terms : int
            Number of terms for the small-x series (>= 12 recommended).
        x_switch : float
            Threshold to switch between small-x series and large-x rational approx.
        """
        self.N = int(series_terms)
        self.x_switch = float(x_switch)
        # harmonic numbers H_0 .. H_{N+1}
        self._harmonic = [0.0]
        for k in range(1, self.N + 2):
            self._harmonic.append(self._harmonic[-1] + 1.0 / k)
        self.recurrence = RecurrenceEvaluator(self.k0, self.k1, routine="BesselK.kn")

    # -------- utilities --------
    @staticmethod
    def _horner(p, x: torch.Tensor) -> torch.Tensor:
        y = torch.zeros_like(x)
        for c in reversed(p):
            y = y * x + c
        return y

    @staticmethod
    def _safe_x(x: torch.Tensor) -> torch.Tensor:
        x = torch.as_tensor(x)
        finfo = torch.finfo(x.dtype)
        return torch.clamp(x, min=finfo.tiny)

    # -------- I0, I1 series (for small-x) --------
    def _i0_series(self, x: torch.Tensor) -> torch.Tensor:
        t = (x * 0.5) ** 2
        term = torch.ones_like(x)
        s = term
        for k in range(1, self.N + 1):
            term = term * t / (k * k)
            s = s + term
        return s

    def _i1_series(self, x: torch.Tensor) -> torch.Tensor:
        # I1(x) = Σ_{k>=0} (x/2)^{2k+1}/(k!(k+1)!)
        acc = 0.5 * x
        s = acc
        u = (x * 0.5) ** 2
        for k in range(1, self.N + 1):
            acc = acc * u / (k * (k + 1))
            s = s + acc
        return s

    # -------- small-x series for K0, K1 --------
    def _k0_small(self, x: torch.Tensor) -> torch.Tensor:
        logx2 = torch.log(x * 0.5)
        I0 = self._i0_series(x)
        t = (x * 0.5) ** 2
        acc = torch.ones_like(x)  # (x/2)^{2k}/(k!)^2
        series = torch.zeros_like(x)
        for k in range(1, self.N + 1):
            acc = acc * t / (k * k)
            series = series + self._harmonic[k] * acc
        return -(logx2 + self.EULER_GAMMA) * I0 + series

    def _k1_small(self, x: torch.Tensor) -> torch.Tensor:
        H = self._harmonic
        I1 = self._i1_series(x)
        logx2 = torch.log(x * 0.5)

        u = (x * 0.5) ** 2
        acc = 0.5 * x
        corr = -0.5 * (H[0] + H[1]) * acc
        for k in range(1, self.N + 1):
            acc = acc * u / (k * (k + 1))
            corr = corr - 0.5 * (H[k] + H[k + 1]) * acc

        return 1.0 / x + (logx2 + self.EULER_GAMMA) * I1 + corr

    def _large(self, p, q, x: torch.Tensor) -> torch.Tensor:
        u = 1.0 / x
        return torch.exp(-x) * (self._horner(p, u) / self._horner(q, u)) / torch.sqrt(x)

    def _piecewise(self, small_fn, p, q, x) -> torch.Tensor:
        x = torch.as_tensor(x, dtype=torch.float64)
        x_safe = self._safe_x(x).reshape(-1)
        small = x_safe <= self.x_switch
        y = torch.empty_like(x_safe)

        xs = x_safe[small]
        if xs.numel() > 0:
            y[small] = small_fn(xs)

        xl = x_safe[~small]
        if xl.numel() > 0:
            y[~small] = self._large(p, q, xl)
        return y.reshape(x.shape)

    # -------- public: K0, K1, Kn --------
    def k0(self, x: torch.Tensor) -> torch.Tensor:
        return self._piecewise(self._k0_small, self.K0_P21, self.K0_Q2, x)

    def k1(self, x: torch.Tensor) -> torch.Tensor:
        return self._piecewise(self._k1_small, self.K1_P22, self.K1_Q2, x)

    def kn(self, n: int, x: torch.Tensor) -> torch.Tensor:
        n = operator.index(n)
        if n < 0:
            self.recurrence._fail("order", f"Order n must be >= 0 in {self.recurrence.routine} (n={n})")
        if n == 0:
            return self.k0(x)
        if n == 1:
            return self.k1(x)
        return self.recurrence.evaluate(n, x)


_default = BesselK()
_bessk = RecurrenceEvaluator(_default.k0, _default.k1, routine="bessk")


def bessk(n: int, x: float) -> float:
    """K_n(x) as a float for integer n >= 2 and finite x > 0."""
    value = _bessk.evaluate(n, x)
    if value.numel() != 1:
        _bessk._fail("domain", f"Argument x must be a scalar in bessk (shape={tuple(value.shape)})")
    return value.item()
