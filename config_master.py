import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "0") -> bool:
    v = str(os.environ.get(name, default)).strip().lower()
    return v in ("1", "true", "yes", "y", "on")


BASE_DIR = os.path.abspath(os.path.dirname(__file__))

# App / session
SECRET_KEY = os.getenv("SECRET_KEY") or os.urandom(24)
SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", "0")
SESSION_COOKIE_SAMESITE = os.getenv("SESSION_COOKIE_SAMESITE", "Lax")
SESSION_CACHE_THRESHOLD = int(os.getenv("SESSION_CACHE_THRESHOLD", 500))
SESSION_LIFETIME_SECONDS = int(os.getenv("SESSION_LIFETIME_SECONDS", 8 * 3600))
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", 25))
UPLOAD_CACHE_THRESHOLD = int(os.getenv("UPLOAD_CACHE_THRESHOLD", 100))
PORT = int(os.getenv("PORT", 7860))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Remote analysis (Groq)
MODEL_ID = os.getenv("GROQ_MODEL_ID", "meta-llama/llama-4-scout-17b-16e-instruct")
ANALYSIS_TIMEOUT_SECONDS = float(os.getenv("ANALYSIS_TIMEOUT_SECONDS", 60))
ANALYSIS_WORKERS = int(os.getenv("ANALYSIS_WORKERS", 4))
ANALYSIS_TEMPERATURE = 0.2
ANALYSIS_MAX_TOKENS = 2048
RESPONSE_SCHEMA_NAME = "third_molar_iac_assessment"


def load_groq_api_keys() -> list:
    """GROQ_API_KEY_1..N take priority over a single GROQ_API_KEY."""
    keys = []
    i = 1
    while True:
        key = os.getenv(f"GROQ_API_KEY_{i}")
        if key:
            keys.append(key)
            i += 1
        else:
            break
    if not keys:
        main_key = os.getenv("GROQ_API_KEY")
        if main_key:
            keys.append(main_key)
    return keys


# Risk tiers. Scores are on a 0-10 scale.
HIGH_RISK_THRESHOLD = 7.0
MEDIUM_RISK_THRESHOLD = 4.0
SCORE_SCALE = 10.0

# Languages
LANGUAGES = ('CN', 'EN', 'JP')
DEFAULT_LANGUAGE = 'CN'
LANGUAGE_NAMES = {
    'CN': 'Simplified Chinese',
    'EN': 'English',
    'JP': 'Japanese',
}
DEFAULT_CASE_NAME = "Untitled case"

# Synthetic population curve drawn behind the patient marker.
# Illustrative only, not fitted to any patient data.
CHART_MEAN = 0.78
CHART_STD_DEV = 0.15
CHART_POINTS = 21
CHART_SEED = 20240315

ANALYSIS_PROMPT = """
You are a professional oral and maxillofacial radiologist. Analyse the attached panoramic radiograph (or CBCT slice) for this individual patient.
You must identify and assess:
1.  The relationship between the left and right mandibular third molars (wisdom teeth, FDI #38 and #48) and the inferior alveolar nerve canal (IAC).
2.  High-risk radiographic signs (e.g., narrowing of the canal, diversion of the canal, darkening of the root, root deflection or hooking, interruption of the canal cortical line).
3.  A multi-view assessment (axial, sagittal, coronal and horizontal) wherever the image allows it.

Return the result strictly as JSON matching the supplied schema, with exactly two objects, "left" and "right":
{
  "left": {
    "toothPosition": "Left mandibular third molar",
    "fdiCode": "38",
    "minDistance": "X.Xmm",
    "contactRelationship": "Contact / Invasion / Separation",
    "relativePosition": "description (e.g., lingual to the apex)",
    "riskScore": "X.X/10",
    "injuryProbability": "XX.X%",
    "highRiskSigns": ["sign 1", "sign 2"],
    "recommendation": "Paragraph one\\nParagraph two"
  },
  "right": { ...same fields for the right mandibular third molar, "fdiCode": "48"... }
}

Requirements for the **recommendation** field:
The string **must** consist of exactly two paragraphs separated by a single newline character `\\n`.
1.  First paragraph: describe the assessment indicators between the mandibular third molar and the mandibular canal, such as the positional and contact relationship. The reader is both the clinician and the patient, so keep the wording formal and professional but easy to follow.
2.  Then start a new line. The newline is mandatory.
3.  Second paragraph: state the concrete risk conclusion, such as how high the surgical injury risk is, and give detailed clinical advice (e.g., whether a CBCT is needed to confirm the 3D position, and the recommended extraction technique).

**riskScore** must be a number from 0.0 to 10.0 written as "X.X/10".
Write every free-text value in {language_name}. Keep all output accurate, professional and concise.
"""

FALLBACK_RESULTS = {
    "left": {
        "toothPosition": "Left mandibular third molar",
        "fdiCode": "38",
        "minDistance": "0.8mm",
        "contactRelationship": "Contact",
        "relativePosition": "Lingual to the apex",
        "riskScore": "8.5/10",
        "injuryProbability": "32.5%",
        "highRiskSigns": ["Narrowing of the canal", "Root deflection"],
        "recommendation": (
            "The root apex of #38 lies in direct contact with the inferior alveolar nerve canal on its lingual side.\n"
            "Because the root is this close to the IAC, a CBCT and a staged (sectioned) extraction should be considered."
        ),
    },
    "right": {
        "toothPosition": "Right mandibular third molar",
        "fdiCode": "48",
        "minDistance": "2.4mm",
        "contactRelationship": "Separation",
        "relativePosition": "Above the canal",
        "riskScore": "2.1/10",
        "injuryProbability": "4.2%",
        "highRiskSigns": [],
        "recommendation": (
            "The roots of #48 are separated from the inferior alveolar nerve canal by a clear cortical margin.\n"
            "Nerve injury risk is low; routine extraction is appropriate."
        ),
    },
}
