# ステップ文書の保存・読み込み（JSON / YAML）
