"""
Sentiment Analyzer

Derives review sentiment from the star rating and computes the summary
statistics stored with every composite analysis.

Thresholds:
- rating >= 4: positive
- rating <= 2: negative
- otherwise:   neutral

Percentages are taken over all reviews, neutral included, so that
positive + negative + neutral always adds up to 100.
"""

from typing import Dict, Iterable, List

POSITIVE = 'positive'
NEGATIVE = 'negative'
NEUTRAL = 'neutral'


class SentimentAnalyzer:
    """Rating-based sentiment classification and bucket statistics"""

    POSITIVE_MIN_RATING = 4
    NEGATIVE_MAX_RATING = 2

    def label_for_rating(self, rating) -> str:
        """
        Map a star rating to a sentiment label

        Args:
            rating: Star rating (1-5). Missing or non-numeric ratings count as neutral.

        Returns:
            'positive', 'negative' or 'neutral'
        """
        try:
            value = float(rating)
        except (TypeError, ValueError):
            return NEUTRAL

        if value >= self.POSITIVE_MIN_RATING:
            return POSITIVE
        if value <= self.NEGATIVE_MAX_RATING:
            return NEGATIVE
        return NEUTRAL

    def partition(self, reviews: Iterable) -> Dict[str, List]:
        """
        Split reviews into sentiment buckets, preserving input order

        Args:
            reviews: Objects with a 'sentiment' attribute

        Returns:
            {'positive': [...], 'negative': [...], 'neutral': [...]}
        """
        buckets = {POSITIVE: [], NEGATIVE: [], NEUTRAL: []}
        for review in reviews:
            buckets.get(review.sentiment, buckets[NEUTRAL]).append(review)
        return buckets

    def get_sentiment_distribution(self, reviews: List) -> Dict:
        """
        Get summary statistics for a list of reviews

        Args:
            reviews: Objects with 'rating' and 'sentiment' attributes

        Returns:
            {
                'total_reviews': int,
                'positive_count': int,
                'negative_count': int,
                'neutral_count': int,
                'average_rating': float,
                'positive_percentage': float,
                'negative_percentage': float,
                'neutral_percentage': float
            }
        """
        total = len(reviews)

        if total == 0:
            return {
                'total_reviews': 0,
                'positive_count': 0,
                'negative_count': 0,
                'neutral_count': 0,
                'average_rating': 0.0,
                'positive_percentage': 0.0,
                'negative_percentage': 0.0,
                'neutral_percentage': 0.0
            }

        buckets = self.partition(reviews)
        positive = len(buckets[POSITIVE])
        negative = len(buckets[NEGATIVE])
        neutral = len(buckets[NEUTRAL])

        # Mean over every review, not per bucket
        average_rating = sum(float(r.rating or 0) for r in reviews) / total

        positive_pct = round(positive / total * 100, 2)
        negative_pct = round(negative / total * 100, 2)
        # Derived so the three percentages sum to exactly 100 after rounding
        neutral_pct = round(100.0 - positive_pct - negative_pct, 2) if neutral else 0.0

        return {
            'total_reviews': total,
            'positive_count': positive,
            'negative_count': negative,
            'neutral_count': neutral,
            'average_rating': round(average_rating, 2),
            'positive_percentage': positive_pct,
            'negative_percentage': negative_pct,
            'neutral_percentage': neutral_pct
        }
