# recipe_importer
#
# Description:
# Imports recipes from Instagram posts into structured data with Google Gemini.

__version__ = "0.1.0"
