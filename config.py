from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Dict, List, Optional


PRODUCTION = "production"
DEVELOPMENT = "development"


class Settings(BaseSettings):
    # MongoDB Configuration
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "mydata_invoicing"

    # Application Configuration
    environment: str = DEVELOPMENT

    # myDATA endpoints
    mydata_dev_url: str = "https://mydataapidev.aade.gr"
    mydata_prod_url: str = "https://mydatapi.aade.gr/myDATA"
    mydata_timeout_seconds: float = 12.0

    # Shared default credentials (never used in production)
    mydata_default_user_id: Optional[str] = None
    mydata_default_subscription_key: Optional[str] = None

    # Public verification lookup encoded in the QR code
    verification_url_template: str = (
        "https://mydatapi.aade.gr/myDATA/TimologioQR/QRInfo"
        "?mark={mark}&uid={uid}&authenticationCode={authentication_code}"
    )

    # JWT Configuration
    jwt_secret_key: str = "your-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"

    # External integrations: "key:owner_id,key2:owner_id2"
    external_api_keys: str = ""

    # Comma separated, "*" for any origin
    cors_origins: str = "*"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == PRODUCTION

    def mydata_base_url(self, environment: Optional[str] = None) -> str:
        """Get myDATA base URL for an environment (defaults to the app environment)"""
        env = (environment or self.environment).lower()
        return self.mydata_prod_url if env == PRODUCTION else self.mydata_dev_url

    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def external_api_key_owners(self) -> Dict[str, str]:
        """Map each configured external API key to the owner it acts for"""
        owners = {}
        for entry in self.external_api_keys.split(","):
            key, _, owner_id = entry.strip().partition(":")
            if key and owner_id:
                owners[key] = owner_id
        return owners

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings():
    return Settings()
