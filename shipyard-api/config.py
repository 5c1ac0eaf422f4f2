import os
from typing import Callable, Optional


class Settings:
    def __init__(self) -> None:
        self.ssm_prefix = os.getenv("SHIPYARD_SSM_PREFIX", "")
        self.db_path = os.getenv("SHIPYARD_DB_PATH", "./data/shipyard.db")
        self.ddb_table = os.getenv("SHIPYARD_DDB_TABLE", "")

        self.max_manifest_bytes = self._get(
            "max_manifest_bytes", "SHIPYARD_MAX_MANIFEST_BYTES", 4 * 1024 * 1024, int
        )
        self.apply_timeout_seconds = self._get(
            "apply_timeout_seconds", "SHIPYARD_APPLY_TIMEOUT_SECONDS", 30.0, float
        )
        self.secret_management_enabled = self._as_bool(
            self._get("secret_management_enabled", "SHIPYARD_SECRET_MANAGEMENT_ENABLED", "true", str)
        )

        self.oidc_issuer = self._get("oidc/issuer", "SHIPYARD_OIDC_ISSUER", "", str)
        self.oidc_audience = self._get("oidc/audience", "SHIPYARD_OIDC_AUDIENCE", "", str)
        self.oidc_jwks_url = self._get("oidc/jwks_url", "SHIPYARD_OIDC_JWKS_URL", "", str)
        self.oidc_roles_claim = self._get(
            "oidc/roles_claim",
            "SHIPYARD_OIDC_ROLES_CLAIM",
            "https://shipyard.example/claims/roles",
            str,
        )
        cors = os.getenv("SHIPYARD_CORS_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
        self.cors_origins = [o.strip() for o in cors.split(",") if o.strip()]

    def _as_bool(self, value: object) -> bool:
        text = str(value or "").strip().lower()
        return text in {"1", "true", "yes", "on"}

    def _get(self, ssm_key: str, env_key: str, default, parser: Callable) -> Optional[object]:
        if env_key in os.environ:
            try:
                return parser(os.environ[env_key])
            except ValueError:
                return default
        if self.ssm_prefix:
            value = self._read_ssm(f"{self.ssm_prefix}/{ssm_key}")
            if value is not None:
                try:
                    return parser(value)
                except ValueError:
                    return default
        return default

    def _read_ssm(self, name: str) -> Optional[str]:
        try:
            import boto3
            from botocore.exceptions import ClientError
        except Exception:
            return None
        try:
            client = boto3.client("ssm")
            response = client.get_parameter(Name=name, WithDecryption=True)
            return response.get("Parameter", {}).get("Value")
        except ClientError:
            return None


SETTINGS = Settings()
