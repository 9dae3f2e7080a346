"""Typed enrichment signals.

Every field is optional: ``None`` means the probe could not tell, which the
scoring engine treats the same as an absent feature.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Dict, List, Optional

SOCIAL_PLATFORMS = ("facebook", "instagram", "linkedin", "twitter", "youtube")


def _known(cls, data: Optional[Dict]) -> Dict:
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in (data or {}).items() if key in names}


@dataclass
class WebsiteQuality:
    has_website: Optional[bool] = None
    has_ssl: Optional[bool] = None
    has_mobile_viewport: Optional[bool] = None
    load_time_ms: Optional[int] = None
    has_title: Optional[bool] = None
    title_length: Optional[int] = None
    has_meta_description: Optional[bool] = None
    h1_count: Optional[int] = None
    has_schema: Optional[bool] = None
    has_google_analytics: Optional[bool] = None
    has_facebook_pixel: Optional[bool] = None
    has_live_chat: Optional[bool] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["WebsiteQuality"]:
        if data is None:
            return None
        return cls(**_known(cls, data))


@dataclass
class SeoSignals:
    indexed: Optional[bool] = None
    estimated_ranking: Optional[int] = None
    organic_keywords: Optional[int] = None
    industry_keywords: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["SeoSignals"]:
        if data is None:
            return None
        values = _known(cls, data)
        values["industry_keywords"] = list(values.get("industry_keywords") or [])
        return cls(**values)


@dataclass
class AdPresence:
    has_google_ads: Optional[bool] = None
    has_facebook_ads: Optional[bool] = None
    has_yelp_ads: Optional[bool] = None
    estimated_ad_spend: Optional[str] = None  # none | low | medium | high

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["AdPresence"]:
        if data is None:
            return None
        return cls(**_known(cls, data))


@dataclass
class SocialProfile:
    has_profile: bool = False
    url: Optional[str] = None
    followers_count: Optional[int] = None
    engagement: Optional[str] = None  # low | medium | high

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["SocialProfile"]:
        if data is None:
            return None
        return cls(**_known(cls, data))


@dataclass
class SocialPresence:
    facebook: Optional[SocialProfile] = None
    instagram: Optional[SocialProfile] = None
    linkedin: Optional[SocialProfile] = None
    twitter: Optional[SocialProfile] = None
    youtube: Optional[SocialProfile] = None

    def profiles(self) -> Dict[str, Optional[SocialProfile]]:
        return {platform: getattr(self, platform) for platform in SOCIAL_PLATFORMS}

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["SocialPresence"]:
        if data is None:
            return None
        return cls(**{
            platform: SocialProfile.from_dict(data.get(platform))
            for platform in SOCIAL_PLATFORMS
        })


@dataclass
class EnrichmentSignals:
    """Everything a homepage probe can tell about a business."""

    website_quality: Optional[WebsiteQuality] = None
    seo: Optional[SeoSignals] = None
    ads: Optional[AdPresence] = None
    social: Optional[SocialPresence] = None
    email: Optional[str] = None

    def to_lead_fields(self) -> Dict:
        """Column values for the lead record."""
        values = {
            "website_quality": self.website_quality.to_dict() if self.website_quality else None,
            "seo_data": self.seo.to_dict() if self.seo else None,
            "ad_presence": self.ads.to_dict() if self.ads else None,
            "social_presence": self.social.to_dict() if self.social else None,
        }
        if self.email:
            values["email"] = self.email
        return values

    @classmethod
    def from_lead_fields(cls, record: Dict) -> "EnrichmentSignals":
        return cls(
            website_quality=WebsiteQuality.from_dict(record.get("website_quality")),
            seo=SeoSignals.from_dict(record.get("seo_data")),
            ads=AdPresence.from_dict(record.get("ad_presence")),
            social=SocialPresence.from_dict(record.get("social_presence")),
            email=record.get("email"),
        )
