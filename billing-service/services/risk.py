"""
Payment Risk Assessor

Scores payment attempts from Stripe Radar outcomes plus our own velocity,
geolocation and device checks. Every failure path returns the most
conservative answer: an assessment that could not be computed never passes.
"""
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from enum import Enum
import logging

from models import PAYMENT_ATTEMPT_TYPES, SecurityEventType
from services.alerts import AlertService
from services.audit import AuditLogger
from services.persistence import BillingRepository
from services.stripe_client import StripeClient

logger = logging.getLogger(__name__)


class RiskLevel(str, Enum):
    """Internal risk scale"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class RiskOutcome(str, Enum):
    """What Radar decided for the payment"""
    ALLOWED = "allowed"
    MANUAL_REVIEW = "manual_review"
    BLOCKED = "blocked"


# Stripe Radar outcome.risk_level -> internal level
RADAR_RISK_LEVELS = {
    "low": RiskLevel.LOW,
    "elevated": RiskLevel.MEDIUM,
    "highest": RiskLevel.VERY_HIGH,
}


@dataclass
class RiskAssessment:
    """Risk verdict for one payment attempt"""
    risk_level: RiskLevel
    risk_score: int  # 0 - 100
    outcome: RiskOutcome
    reasons: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            "risk_level": self.risk_level.value,
            "risk_score": self.risk_score,
            "outcome": self.outcome.value,
            "reasons": self.reasons,
            "recommendations": self.recommendations,
        }


@dataclass
class FraudCheckResult:
    """Risk assessment plus the supplementary checks behind the verdict"""
    passed: bool
    assessment: RiskAssessment
    radar_data: Optional[Dict[str, Any]] = None
    velocity_check: bool = True
    geolocation_check: bool = True
    device_fingerprint_check: bool = True

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            "passed": self.passed,
            "assessment": self.assessment.to_dict(),
            "radar_data": self.radar_data,
            "additional_checks": {
                "velocity_check": self.velocity_check,
                "geolocation_check": self.geolocation_check,
                "device_fingerprint": self.device_fingerprint_check,
            },
        }


@dataclass
class PatternAnalysis:
    """Subscription history red flags for a customer"""
    suspicious: bool
    patterns: List[str] = field(default_factory=list)
    risk_factors: List[str] = field(default_factory=list)


@dataclass
class VelocityCheck:
    """Payment attempt count inside the rolling window"""
    exceeded: bool
    count: int
    recommendations: List[str] = field(default_factory=list)


def map_risk_level(radar_level: Optional[str]) -> RiskLevel:
    return RADAR_RISK_LEVELS.get(radar_level or "", RiskLevel.MEDIUM)


def map_outcome(seller_message: Optional[str]) -> RiskOutcome:
    if not seller_message:
        return RiskOutcome.ALLOWED
    message = seller_message.lower()
    if "blocked" in message:
        return RiskOutcome.BLOCKED
    if "review" in message:
        return RiskOutcome.MANUAL_REVIEW
    return RiskOutcome.ALLOWED


def evaluate_overall_risk(
    assessment: RiskAssessment,
    checks: List[bool],
    score_threshold: int = 80,
) -> bool:
    """
    Decide whether a payment passes

    Fails when Radar blocked it, the risk is very high, the score exceeds
    the threshold, or any supplementary check failed.
    """
    if assessment.outcome == RiskOutcome.BLOCKED:
        return False
    if assessment.risk_level == RiskLevel.VERY_HIGH:
        return False
    if assessment.risk_score > score_threshold:
        return False
    return all(checks)


def fail_safe_result() -> FraudCheckResult:
    """Verdict used when the assessment itself could not be computed"""
    return FraudCheckResult(
        passed=False,
        assessment=RiskAssessment(
            risk_level=RiskLevel.HIGH,
            risk_score=100,
            outcome=RiskOutcome.MANUAL_REVIEW,
            reasons=["Unable to assess risk due to technical error"],
            recommendations=["Manual review required"],
        ),
    )


class RiskAssessor:
    """
    Fraud risk scoring for payments and subscription history

    Never fails open: every internal error yields a failing verdict.
    """

    def __init__(
        self,
        stripe_client: StripeClient,
        repository: BillingRepository,
        audit: AuditLogger,
        alerts: AlertService,
        velocity_window_minutes: int = 60,
        velocity_max_attempts: int = 3,
        risk_score_threshold: int = 80,
    ):
        self.stripe = stripe_client
        self.repository = repository
        self.audit = audit
        self.alerts = alerts
        self.velocity_window_minutes = velocity_window_minutes
        self.velocity_max_attempts = velocity_max_attempts
        self.risk_score_threshold = risk_score_threshold

    def assess_payment_risk(
        self,
        payment_intent_id: str,
        user_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> FraudCheckResult:
        """
        Assess fraud risk for a payment attempt

        Args:
            payment_intent_id: Stripe payment intent ID
            user_id: Owning user, if known
            context: Extra signals (ip_address, ip_country, device_fingerprint,
                known_device_fingerprints) merged over the intent metadata

        Returns:
            FraudCheckResult; the fail-safe verdict on any error
        """
        context = context or {}
        try:
            result = self._assess(payment_intent_id, user_id, context)
        except Exception as e:
            logger.error(
                f"Error assessing payment risk for {payment_intent_id}: {e}",
                exc_info=True,
            )
            self.alerts.capture_exception(
                e,
                tags={"component": "risk-assessor", "operation": "assess-risk"},
                user_id=user_id,
                extra={"payment_intent_id": payment_intent_id},
            )
            # Fail closed
            result = fail_safe_result()
            self.audit.log_security_event(
                SecurityEventType.FRAUD_CHECK,
                user_id=user_id,
                success=False,
                error=f"Risk assessment failed: {e}",
                metadata={"payment_intent_id": payment_intent_id, **result.to_dict()},
            )
            return result

        # Log assessment
        assessment = result.assessment
        self.audit.log_security_event(
            SecurityEventType.FRAUD_CHECK,
            user_id=user_id,
            success=result.passed,
            error=None if result.passed else "Fraud check failed",
            metadata={
                "payment_intent_id": payment_intent_id,
                "risk_level": assessment.risk_level.value,
                "risk_score": assessment.risk_score,
                "reasons": assessment.reasons,
            },
            ip_address=context.get("ip_address"),
        )

        # Alert on high risk
        if assessment.risk_level in (RiskLevel.HIGH, RiskLevel.VERY_HIGH):
            self.alerts.capture_message(
                "High-risk payment detected",
                level="warning",
                tags={"component": "fraud-prevention", "risk_level": assessment.risk_level.value},
                user_id=user_id,
                extra={"payment_intent_id": payment_intent_id, **result.to_dict()},
            )

        return result

    def _assess(
        self, payment_intent_id: str, user_id: Optional[str], context: Dict[str, Any]
    ) -> FraudCheckResult:
        # Radar outcome from the latest charge
        intent = self.stripe.retrieve_payment_intent(payment_intent_id)
        charge = self._latest_charge(intent)
        outcome = charge.get("outcome") or {}

        reasons = [value for value in (outcome.get("reason"), outcome.get("seller_message")) if value]
        recommendations = []
        if outcome.get("risk_level") == "highest":
            recommendations.append("Consider requiring additional verification")
            recommendations.append("Monitor user activity closely")
        if outcome.get("reason") == "generic_decline":
            recommendations.append("Suggest user contacts their bank")

        assessment = RiskAssessment(
            risk_level=map_risk_level(outcome.get("risk_level")),
            risk_score=int(outcome.get("risk_score") or 0),
            outcome=map_outcome(outcome.get("seller_message")),
            reasons=reasons,
            recommendations=recommendations,
        )

        # Supplementary checks; context overrides intent metadata
        signals = {**(intent.get("metadata") or {}), **context}
        velocity_ok = True
        if user_id:
            velocity_ok = not self.check_velocity_limits(
                user_id, signals.get("ip_address"), self.velocity_window_minutes
            ).exceeded
        geolocation_ok = self.check_geolocation(charge, signals.get("ip_country"))
        device_ok = self.check_device_fingerprint(
            signals.get("device_fingerprint"), signals.get("known_device_fingerprints")
        )

        return FraudCheckResult(
            passed=evaluate_overall_risk(
                assessment,
                [velocity_ok, geolocation_ok, device_ok],
                self.risk_score_threshold,
            ),
            assessment=assessment,
            radar_data={
                "network_status": outcome.get("network_status"),
                "reason": outcome.get("reason"),
                "seller_message": outcome.get("seller_message"),
                "type": outcome.get("type"),
            },
            velocity_check=velocity_ok,
            geolocation_check=geolocation_ok,
            device_fingerprint_check=device_ok,
        )

    @staticmethod
    def _latest_charge(intent: Dict[str, Any]) -> Dict[str, Any]:
        charge = intent.get("latest_charge")
        if isinstance(charge, dict):
            return charge
        # Older API versions embed charges on the intent
        charges = (intent.get("charges") or {}).get("data") or []
        return charges[0] if charges else {}

    @staticmethod
    def check_geolocation(charge: Dict[str, Any], ip_country: Optional[str]) -> bool:
        """Card issuing country must match the request country when both are known"""
        card = (charge.get("payment_method_details") or {}).get("card") or {}
        card_country = card.get("country")
        if not card_country or not ip_country:
            return True
        return card_country.upper() == str(ip_country).upper()

    @staticmethod
    def check_device_fingerprint(
        fingerprint: Optional[str], known_fingerprints: Optional[List[str]]
    ) -> bool:
        """Device must be one the user has paid from before, when both are known"""
        if not fingerprint or not known_fingerprints:
            return True
        return fingerprint in known_fingerprints

    def check_velocity_limits(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        window_minutes: int = 60,
    ) -> VelocityCheck:
        """
        Count the user's payment attempts in a rolling window

        Returns:
            VelocityCheck; exceeded=True when the count cannot be determined
        """
        try:
            since = datetime.utcnow() - timedelta(minutes=window_minutes)
            count = self.audit.count_events(user_id, PAYMENT_ATTEMPT_TYPES, since)
        except Exception as e:
            logger.error(f"Error checking velocity limits for user {user_id}: {e}")
            return VelocityCheck(
                exceeded=True,
                count=0,
                recommendations=["Manual review required due to technical error"],
            )

        exceeded = count > self.velocity_max_attempts
        if exceeded:
            logger.warning(f"Velocity limit exceeded for user {user_id}: {count} attempts")
            self.audit.log_security_event(
                SecurityEventType.RATE_LIMIT_EXCEEDED,
                user_id=user_id,
                success=False,
                metadata={"attempts_count": count, "time_window_minutes": window_minutes},
                ip_address=ip_address,
            )
            return VelocityCheck(
                exceeded=True,
                count=count,
                recommendations=[
                    "Temporarily block user",
                    "Require additional verification",
                    "Manual review",
                ],
            )

        return VelocityCheck(
            exceeded=False, count=count, recommendations=["Monitor continued activity"]
        )

    def analyze_subscription_patterns(
        self, user_id: str, customer_id: Optional[str] = None
    ) -> PatternAnalysis:
        """
        Look for abuse patterns in the customer's subscription history

        Args:
            user_id: Owning user
            customer_id: Stripe customer; falls back to the stored subscription

        Returns:
            PatternAnalysis; suspicious=True when the history cannot be read
        """
        try:
            if not customer_id:
                subscription = self.repository.get_subscription(user_id)
                customer_id = subscription.stripe_customer_id if subscription else None
            if not customer_id:
                return PatternAnalysis(
                    suspicious=False, risk_factors=["No customer record found"]
                )

            subscriptions = self.stripe.list_customer_subscriptions(customer_id, limit=100)
        except Exception as e:
            logger.error(f"Error analyzing subscription patterns for user {user_id}: {e}")
            self.alerts.capture_exception(
                e,
                tags={"component": "risk-assessor", "operation": "analyze-patterns"},
                user_id=user_id,
            )
            return PatternAnalysis(
                suspicious=True,
                patterns=["Unable to analyze due to error"],
                risk_factors=["Technical error during analysis"],
            )

        # Count subscriptions by status
        statuses = [subscription.get("status") for subscription in subscriptions]
        canceled = statuses.count("canceled")
        trialing = statuses.count("trialing")
        active = statuses.count("active") + trialing

        # Check for abuse patterns
        patterns = []
        risk_factors = []
        if canceled > 2:
            patterns.append("Multiple canceled subscriptions")
            risk_factors.append("Pattern of subscription abuse")
        if active > 1:
            patterns.append("Multiple active subscriptions")
            risk_factors.append("Unusual subscription behavior")
        if trialing > 1:
            patterns.append("Multiple trial subscriptions")
            risk_factors.append("Potential trial abuse")

        analysis = PatternAnalysis(
            suspicious=bool(risk_factors), patterns=patterns, risk_factors=risk_factors
        )

        if analysis.suspicious:
            self.audit.log_security_event(
                SecurityEventType.SUSPICIOUS_ACTIVITY,
                user_id=user_id,
                success=False,
                metadata={
                    "patterns": patterns,
                    "risk_factors": risk_factors,
                    "subscriptions_count": len(subscriptions),
                },
            )

        return analysis
