import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Engine configuration settings"""
    
    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///arena.db')
    
    # Engine settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    
    # Outcome generator / illustrator settings
    OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
    OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
    OPENAI_IMAGE_MODEL = os.getenv('OPENAI_IMAGE_MODEL', 'gpt-image-1')
    OPENAI_TIMEOUT_SECONDS = float(os.getenv('OPENAI_TIMEOUT_SECONDS', 60))
    GENERATION_TEMPERATURE = float(os.getenv('GENERATION_TEMPERATURE', 0.9))
    ENABLE_ILLUSTRATIONS = os.getenv('ENABLE_ILLUSTRATIONS', 'False').lower() == 'true'
    
    # Scheduler settings
    ROUND_TIMEOUT_SECONDS = int(os.getenv('ROUND_TIMEOUT_SECONDS', 900))  # 15 minutes
    HOUSEKEEPING_INTERVAL_SECONDS = int(os.getenv('HOUSEKEEPING_INTERVAL_SECONDS', 30))
    
    # Campaign settings
    CAMPAIGN_SEASON_ID = os.getenv('CAMPAIGN_SEASON_ID', 'season-1')
    
    @classmethod
    def validate(cls):
        """Validate that the configuration is usable"""
        if cls.ENABLE_ILLUSTRATIONS and not cls.OPENAI_API_KEY:
            raise ValueError("OPENAI_API_KEY is required when ENABLE_ILLUSTRATIONS is set")
        if cls.ROUND_TIMEOUT_SECONDS <= 0:
            raise ValueError("ROUND_TIMEOUT_SECONDS must be positive")
        if cls.HOUSEKEEPING_INTERVAL_SECONDS <= 0:
            raise ValueError("HOUSEKEEPING_INTERVAL_SECONDS must be positive")
