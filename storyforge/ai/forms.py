from flask_wtf import FlaskForm
from wtforms import SelectField, StringField
from wtforms.validators import InputRequired, Length, Optional, URL

from ..services.generation import PROVIDERS


class GenerateForm(FlaskForm):
    class Meta:
        csrf = False

    story_id = StringField("Story", validators=[InputRequired(), Length(max=36)])
    prompt_id = StringField("Prompt", validators=[InputRequired(), Length(max=36)])
    chapter_id = StringField("Chapter", validators=[Optional(), Length(max=36)])
    provider = SelectField("Provider", choices=[(name, name) for name in PROVIDERS])
    model_id = StringField("Model", validators=[InputRequired(), Length(max=255)])
    session_id = StringField("Session", validators=[Optional(), Length(max=120)])


class AISettingsForm(FlaskForm):
    class Meta:
        csrf = False

    openai_key = StringField("OpenAI API key", validators=[Optional(), Length(max=255)])
    openrouter_key = StringField("OpenRouter API key", validators=[Optional(), Length(max=255)])
    local_api_url = StringField(
        "Local API URL",
        validators=[Optional(), URL(require_tld=False), Length(max=255)],
    )
