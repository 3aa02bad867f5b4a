"""Statistical engine for A/B testing.

Two-proportion z-test, Thompson Sampling traffic allocation, revenue-aware
winner selection, anomaly detection and futility stopping.

Everything here is pure-Python (``math`` and ``random``) and stateless apart
from configuration, so a single instance can be shared by every caller. The
normal CDF and inverse normal CDF use closed-form rational approximations
(Abramowitz & Stegun 26.2.17 and Acklam's algorithm); the coefficients must
stay exactly as written.
"""
import math
import random
from typing import Dict, List, Mapping, Optional, Sequence

# Arms are plain mappings: {"visitors": int, "conversions": int, "revenue": float}
Arm = Mapping[str, float]


class StatisticalEngine:
    """Stateless decision library for two-arm experiments."""

    def __init__(
        self,
        confidence_level: float = 0.95,
        min_sample_size: int = 100,
        futility_multiplier: int = 4,
        anomaly_threshold: float = 0.5,
        rng: Optional[random.Random] = None
    ):
        """
        Args:
            confidence_level: Two-tailed confidence required for significance
            min_sample_size: Visitors each arm needs before any verdict
            futility_multiplier: Futility is checked after this many times the minimum sample
            anomaly_threshold: Relative drop (0.5 = 50%) that makes an anomaly critical
            rng: Random source for sampling; defaults to the ``random`` module
        """
        self.confidence_level = confidence_level
        self.min_sample_size = min_sample_size
        self.futility_multiplier = futility_multiplier
        self.anomaly_threshold = anomaly_threshold
        self.rng = rng or random.Random()

    # ============ SAMPLING ============

    def sample_beta(self, alpha: float, beta: float) -> float:
        """
        Draw from Beta(alpha, beta).

        Large posteriors (alpha + beta > 30) use a clipped normal approximation;
        small ones are composed from two Gamma draws.
        """
        if alpha + beta > 30:
            mean = alpha / (alpha + beta)
            variance = (alpha * beta) / ((alpha + beta) ** 2 * (alpha + beta + 1))
            return max(0.0, min(1.0, self.sample_normal(mean, math.sqrt(variance))))

        x = self.sample_gamma(alpha, 1)
        y = self.sample_gamma(beta, 1)
        return x / (x + y)

    def sample_gamma(self, shape: float, scale: float) -> float:
        """Draw from Gamma(shape, scale) with Marsaglia-Tsang rejection sampling."""
        if shape < 1:
            # 1 - random() lies in (0, 1], keeping the power finite
            return self.sample_gamma(shape + 1, scale) * (1.0 - self.rng.random()) ** (1 / shape)

        d = shape - 1 / 3
        c = 1 / math.sqrt(9 * d)

        while True:
            x = self.sample_normal(0, 1)
            v = 1 + c * x
            while v <= 0:
                x = self.sample_normal(0, 1)
                v = 1 + c * x

            v = v * v * v
            u = 1.0 - self.rng.random()

            if u < 1 - 0.0331 * (x * x) * (x * x):
                return d * v * scale

            if math.log(u) < 0.5 * x * x + d * (1 - v + math.log(v)):
                return d * v * scale

    def sample_normal(self, mean: float, std: float) -> float:
        """Draw from Normal(mean, std) with the Box-Muller transform."""
        u1 = 1.0 - self.rng.random()
        u2 = self.rng.random()
        z = math.sqrt(-2 * math.log(u1)) * math.cos(2 * math.pi * u2)
        return mean + std * z

    # ============ THOMPSON SAMPLING ============

    def thompson_sampling_probabilities(self, variants: Sequence[Arm], samples: int = 10000) -> List[float]:
        """
        Monte Carlo estimate of the probability each variant is best.

        Each arm's posterior is Beta(conversions + 1, visitors - conversions + 1).

        Args:
            variants: Arms as mappings with ``visitors`` and ``conversions``
            samples: Number of posterior draws per arm

        Returns:
            Win fraction per variant, in input order
        """
        wins = [0] * len(variants)
        params = [
            (v["conversions"] + 1, v["visitors"] - v["conversions"] + 1)
            for v in variants
        ]

        for _ in range(samples):
            best_idx = 0
            best_sample = -1.0
            for idx, (alpha, beta) in enumerate(params):
                sample = self.sample_beta(alpha, beta)
                if sample > best_sample:
                    best_sample = sample
                    best_idx = idx
            wins[best_idx] += 1

        return [w / samples for w in wins]

    def get_traffic_allocation(self, variants: Sequence[Arm]) -> List[float]:
        """
        Traffic split from Thompson Sampling with a 10% exploration floor per arm.

        Falls back to an equal split when the floors alone would use all traffic.
        """
        min_allocation = 0.1
        total_min = min_allocation * len(variants)

        if total_min >= 1:
            return [1 / len(variants)] * len(variants)

        probabilities = self.thompson_sampling_probabilities(variants)
        remaining = 1 - total_min
        return [min_allocation + p * remaining for p in probabilities]

    # ============ HYPOTHESIS TESTING ============

    def calculate_z_score(self, p1: float, p2: float, n1: int, n2: int) -> float:
        """Pooled two-proportion z-score of p2 (treatment) against p1 (control)."""
        if n1 <= 0 or n2 <= 0:
            return 0.0

        p_pooled = (p1 * n1 + p2 * n2) / (n1 + n2)
        se = math.sqrt(p_pooled * (1 - p_pooled) * (1 / n1 + 1 / n2))

        if se == 0:
            return 0.0

        return (p2 - p1) / se

    def calculate_p_value(self, z: float) -> float:
        """Two-tailed p-value for a z-score (Abramowitz & Stegun 26.2.17)."""
        abs_z = abs(z)
        t = 1 / (1 + 0.2316419 * abs_z)
        d = 0.3989423 * math.exp(-abs_z * abs_z / 2)
        p = d * t * (0.3193815 + t * (-0.3565638 + t * (1.781478 + t * (-1.821256 + t * 1.330274))))

        return min(1.0, max(0.0, 2 * p))

    def calculate_sample_size(
        self,
        baseline: float,
        mde: float,
        alpha: float = 0.05,
        power: float = 0.8
    ) -> int:
        """
        Required visitors per arm.

        Args:
            baseline: Baseline conversion rate (0.05 for 5%)
            mde: Minimum detectable relative effect (0.2 for +20%)
            alpha: Significance level
            power: Statistical power

        Returns:
            Sample size per variant, rounded up
        """
        z_alpha = self.get_z_score(1 - alpha / 2)
        z_beta = self.get_z_score(power)

        p1 = baseline
        p2 = baseline * (1 + mde)
        p_bar = (p1 + p2) / 2

        n = 2 * (z_alpha + z_beta) ** 2 * p_bar * (1 - p_bar) / (p2 - p1) ** 2
        return math.ceil(n)

    def get_z_score(self, p: float) -> float:
        """Inverse standard normal CDF (Acklam's rational approximation)."""
        if p <= 0:
            return -math.inf
        if p >= 1:
            return math.inf

        a1 = -3.969683028665376e1
        a2 = 2.209460984245205e2
        a3 = -2.759285104469687e2
        a4 = 1.383577518672690e2
        a5 = -3.066479806614716e1
        a6 = 2.506628277459239e0

        b1 = -5.447609879822406e1
        b2 = 1.615858368580409e2
        b3 = -1.556989798598866e2
        b4 = 6.680131188771972e1
        b5 = -1.328068155288572e1

        c1 = -7.784894002430293e-3
        c2 = -3.223964580411365e-1
        c3 = -2.400758277161838e0
        c4 = -2.549732539343734e0
        c5 = 4.374664141464968e0
        c6 = 2.938163982698783e0

        d1 = 7.784695709041462e-3
        d2 = 3.224671290700398e-1
        d3 = 2.445134137142996e0
        d4 = 3.754408661907416e0

        p_low = 0.02425
        p_high = 1 - p_low

        if p < p_low:
            q = math.sqrt(-2 * math.log(p))
            return ((((((c1 * q + c2) * q + c3) * q + c4) * q + c5) * q + c6) /
                    ((((d1 * q + d2) * q + d3) * q + d4) * q + 1))
        if p <= p_high:
            q = p - 0.5
            r = q * q
            return ((((((a1 * r + a2) * r + a3) * r + a4) * r + a5) * r + a6) * q /
                    (((((b1 * r + b2) * r + b3) * r + b4) * r + b5) * r + 1))

        q = math.sqrt(-2 * math.log(1 - p))
        return -((((((c1 * q + c2) * q + c3) * q + c4) * q + c5) * q + c6) /
                 ((((d1 * q + d2) * q + d3) * q + d4) * q + 1))

    def analyze_experiment(self, control: Arm, treatment: Arm) -> Dict:
        """
        Conversion-rate analysis of treatment against control.

        Returns:
            Dict with per-arm rates, z_score, p_value, significant, winner
            ("treatment", "control" or None), relative_lift, absolute_lift and a
            95% confidence_interval for the absolute lift
        """
        n1 = control["visitors"]
        n2 = treatment["visitors"]
        p1 = control["conversions"] / n1 if n1 > 0 else 0.0
        p2 = treatment["conversions"] / n2 if n2 > 0 else 0.0

        z_score = self.calculate_z_score(p1, p2, n1, n2)
        p_value = self.calculate_p_value(z_score)

        significant = p_value < (1 - self.confidence_level)
        winner = ("treatment" if p2 > p1 else "control") if significant else None

        relative_lift = (p2 - p1) / p1 if p1 > 0 else 0.0
        absolute_lift = p2 - p1

        variance = 0.0
        if n1 > 0:
            variance += p1 * (1 - p1) / n1
        if n2 > 0:
            variance += p2 * (1 - p2) / n2
        se = math.sqrt(variance)
        z95 = 1.96

        return {
            "control": {
                "visitors": n1,
                "conversions": control["conversions"],
                "conversion_rate": p1
            },
            "treatment": {
                "visitors": n2,
                "conversions": treatment["conversions"],
                "conversion_rate": p2
            },
            "z_score": z_score,
            "p_value": p_value,
            "significant": significant,
            "winner": winner,
            "relative_lift": relative_lift,
            "absolute_lift": absolute_lift,
            "confidence_interval": {
                "lower": absolute_lift - z95 * se,
                "upper": absolute_lift + z95 * se
            },
            "confidence_level": self.confidence_level
        }

    # ============ REVENUE OPTIMIZATION ============

    def analyze_experiment_with_revenue(self, control: Arm, treatment: Arm) -> Dict:
        """Conversion analysis extended with revenue metrics and a combined winner."""
        base_analysis = self.analyze_experiment(control, treatment)

        control_rpv = control["revenue"] / control["visitors"] if control["visitors"] > 0 else 0.0
        treatment_rpv = treatment["revenue"] / treatment["visitors"] if treatment["visitors"] > 0 else 0.0

        control_aov = control["revenue"] / control["conversions"] if control["conversions"] > 0 else 0.0
        treatment_aov = treatment["revenue"] / treatment["conversions"] if treatment["conversions"] > 0 else 0.0

        revenue_lift = (treatment_rpv - control_rpv) / control_rpv if control_rpv > 0 else 0.0
        revenue_significant = self.is_revenue_difference_significant(control, treatment)

        return {
            **base_analysis,
            "revenue": {
                "control": {
                    "total": control["revenue"],
                    "per_visitor": control_rpv,
                    "avg_order_value": control_aov
                },
                "treatment": {
                    "total": treatment["revenue"],
                    "per_visitor": treatment_rpv,
                    "avg_order_value": treatment_aov
                },
                "lift": revenue_lift,
                "significant": revenue_significant
            },
            "combined_winner": self.get_combined_winner(base_analysis, revenue_lift, revenue_significant)
        }

    def is_revenue_difference_significant(self, control: Arm, treatment: Arm) -> bool:
        """
        Approximate two-sample test on revenue per visitor.

        Per-visitor revenue variance is approximated as RPV^2 / n rather than the
        sample variance of order values.
        """
        if control["visitors"] < 30 or treatment["visitors"] < 30:
            return False

        control_rpv = control["revenue"] / control["visitors"]
        treatment_rpv = treatment["revenue"] / treatment["visitors"]

        control_var = (control_rpv * control_rpv) / control["visitors"]
        treatment_var = (treatment_rpv * treatment_rpv) / treatment["visitors"]

        se = math.sqrt(control_var + treatment_var)
        if se == 0:
            return False

        z_score = (treatment_rpv - control_rpv) / se
        return self.calculate_p_value(z_score) < (1 - self.confidence_level)

    def get_combined_winner(self, conversion_analysis: Dict, revenue_lift: float, revenue_significant: bool) -> Dict:
        """
        Reconcile the conversion verdict with the revenue signal.

        Priority: agreement (high) > significant revenue (medium) >
        conversion only (medium) > no winner (low).
        """
        conversion_winner = conversion_analysis.get("winner")

        if conversion_winner == "treatment" and revenue_lift > 0:
            return {"winner": "treatment", "confidence": "high",
                    "reason": "Both conversion and revenue favor treatment"}
        if conversion_winner == "control" and revenue_lift < 0:
            return {"winner": "control", "confidence": "high",
                    "reason": "Both conversion and revenue favor control"}

        if revenue_significant:
            return {
                "winner": "treatment" if revenue_lift > 0 else "control",
                "confidence": "medium",
                "reason": "Revenue significant, prioritizing revenue over conversion rate"
            }

        if conversion_winner:
            return {"winner": conversion_winner, "confidence": "medium",
                    "reason": "Conversion significant, revenue not yet conclusive"}

        return {"winner": None, "confidence": "low", "reason": "No significant differences detected"}

    # ============ ANOMALY DETECTION ============

    def detect_anomaly(self, current_rate: float, historical_rate: float, sample_size: int) -> Dict:
        """
        One-tailed (99%) test for a conversion-rate drop below the historical baseline.

        Returns:
            Dict with is_anomaly and, when flagged, severity ("critical" above
            the anomaly threshold, else "warning"), drop_percent, z_score, reason
        """
        if sample_size < 50 or historical_rate <= 0:
            return {"is_anomaly": False, "reason": "Insufficient data"}

        se = math.sqrt(historical_rate * (1 - historical_rate) / sample_size)
        if se == 0:
            return {"is_anomaly": False, "reason": "Degenerate baseline"}

        z_score = (current_rate - historical_rate) / se

        if z_score < -2.33:
            drop_percent = (historical_rate - current_rate) / historical_rate * 100

            if drop_percent > self.anomaly_threshold * 100:
                return {
                    "is_anomaly": True,
                    "severity": "critical",
                    "drop_percent": drop_percent,
                    "z_score": z_score,
                    "reason": f"Conversion rate dropped {drop_percent:.1f}% below baseline"
                }

            return {
                "is_anomaly": True,
                "severity": "warning",
                "drop_percent": drop_percent,
                "z_score": z_score,
                "reason": f"Conversion rate is {drop_percent:.1f}% below baseline"
            }

        return {"is_anomaly": False}

    def should_pause_experiment(self, control: Arm, treatment: Arm, historical_rate: float) -> Dict:
        """Pause on a critical control-arm drop or a catastrophically bad treatment."""
        control_rate = control["conversions"] / control["visitors"] if control["visitors"] > 0 else 0.0
        control_anomaly = self.detect_anomaly(control_rate, historical_rate, control["visitors"])

        if control_anomaly["is_anomaly"] and control_anomaly["severity"] == "critical":
            return {
                "should_pause": True,
                "reason": "Control group showing unexpected drop - possible external factor",
                "anomaly": control_anomaly
            }

        treatment_rate = treatment["conversions"] / treatment["visitors"] if treatment["visitors"] > 0 else 0.0
        if treatment["visitors"] >= 100 and treatment_rate < historical_rate * 0.3:
            return {
                "should_pause": True,
                "reason": "Treatment causing severe conversion drop (>70%)",
                "anomaly": {
                    "treatment_rate": treatment_rate,
                    "historical_rate": historical_rate,
                    "drop_percent": (historical_rate - treatment_rate) / historical_rate * 100
                }
            }

        return {"should_pause": False}

    # ============ STOPPING RULES ============

    def has_minimum_sample(self, control: Arm, treatment: Arm) -> bool:
        return (control["visitors"] >= self.min_sample_size and
                treatment["visitors"] >= self.min_sample_size)

    def check_futility(self, control: Arm, treatment: Arm) -> Dict:
        """Stop without a winner once both arms are large and p > 0.5."""
        min_required = self.min_sample_size * self.futility_multiplier

        if control["visitors"] < min_required or treatment["visitors"] < min_required:
            return {"should_stop": False, "reason": None}

        analysis = self.analyze_experiment(control, treatment)

        if analysis["p_value"] > 0.5:
            return {
                "should_stop": True,
                "reason": "futility",
                "message": "No significant effect detected after extended sampling period"
            }

        return {"should_stop": False, "reason": None}

    def get_experiment_status(self, control: Arm, treatment: Arm) -> Dict:
        """
        Single decision entry point for a running experiment.

        Returns:
            Dict with status ("collecting", "significant", "futile", "running"),
            message, recommendation ("continue", "apply_treatment",
            "keep_control", "end_experiment") and, past the minimum sample,
            the underlying analysis
        """
        if not self.has_minimum_sample(control, treatment):
            return {
                "status": "collecting",
                "message": (
                    f"Need more data. Control: {control['visitors']}/{self.min_sample_size}, "
                    f"Treatment: {treatment['visitors']}/{self.min_sample_size}"
                ),
                "recommendation": "continue"
            }

        analysis = self.analyze_experiment(control, treatment)

        if analysis["significant"]:
            side = "Treatment" if analysis["winner"] == "treatment" else "Control"
            return {
                "status": "significant",
                "message": f"{side} wins with {analysis['relative_lift'] * 100:.1f}% lift (p={analysis['p_value']:.4f})",
                "recommendation": "apply_treatment" if analysis["winner"] == "treatment" else "keep_control",
                "analysis": analysis
            }

        futility = self.check_futility(control, treatment)
        if futility["should_stop"]:
            return {
                "status": "futile",
                "message": futility["message"],
                "recommendation": "end_experiment",
                "analysis": analysis
            }

        return {
            "status": "running",
            "message": f"Not yet significant (p={analysis['p_value']:.4f}). Continue collecting data.",
            "recommendation": "continue",
            "analysis": analysis
        }
