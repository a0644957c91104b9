from flask_wtf import FlaskForm
from wtforms import BooleanField, SelectField, StringField, TextAreaField
from wtforms.validators import InputRequired, Length, Optional, ValidationError

from ..services.records import LOREBOOK_CATEGORIES, LOREBOOK_LEVELS, LorebookScope


class LorebookEntryForm(FlaskForm):
    class Meta:
        csrf = False

    name = StringField("Name", validators=[InputRequired(), Length(max=150)])
    description = TextAreaField("Description", validators=[Optional()])
    category = SelectField("Category", choices=[(category, category.title()) for category in LOREBOOK_CATEGORIES])
    level = SelectField("Level", choices=[(level, level.title()) for level in LOREBOOK_LEVELS], default="story")
    scope_id = StringField("Scope", validators=[Length(max=36)])
    is_disabled = BooleanField("Disabled", default=False)

    def validate_scope_id(self, field):
        try:
            LorebookScope(self.level.data, field.data or None)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
